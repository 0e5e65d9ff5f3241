"""Chat REST router.

HTTP fallback for clients without a live realtime connection. Every
endpoint requires ``Authorization: Bearer <token>``.

Endpoints:
    GET    /api/chat/conversations                   - Conversation list
    GET    /api/chat/conversation/{user_id}          - Get or create chat with a connection
    GET    /api/chat/messages/{conversation_id}      - Paginated history (marks read)
    POST   /api/chat/send/{user_id}                  - Send a message
    GET    /api/chat/unread                          - Total unread count
    PUT    /api/chat/read/{conversation_id}          - Mark conversation read
    DELETE /api/chat/message/{message_id}            - Soft-delete own message

Failures are raised as ChatError subclasses and rendered by the app-level
exception handler as ``{"success": false, "error": <code>, "message": ...}``.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from collera.deps import get_chat_service, get_current_user, get_sessions
from .manager import SessionManager
from .schemas import SendMessageBody
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/conversations")
async def list_conversations(
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """List the caller's conversations, most recently active first.

    Returns:
        ``data``: list of {conversationId, participant, lastMessage,
        lastMessageAt, unreadCount}.
    """
    conversations = await service.list_conversations(user_id)
    return {"success": True, "data": conversations}


@router.get("/conversation/{other_user_id}")
async def open_conversation(
    other_user_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Get or create the conversation with a connection ("open chat").

    Returns 404 for an unknown user and 403 if the user is not a connection.
    """
    conversation = await service.open_conversation(user_id, other_user_id)
    participant = await run_in_threadpool(service.oracle.get_user_summary, other_user_id)
    return {
        "success": True,
        "data": {"conversationId": conversation.id, "participant": participant},
    }


@router.get("/messages/{conversation_id}")
async def get_messages(
    conversation_id: str,
    page: int = Query(1, ge=1, description="1-based page, page 1 is the newest"),
    limit: Optional[int] = Query(None, ge=1, description="Messages per page"),
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Get a chronological page of history.

    Side effect: every message from the other participant is marked read by
    the caller and the caller's unread counter is reset.
    """
    result = await service.get_messages(conversation_id, user_id, page, limit)
    return {
        "success": True,
        "data": {
            "messages": [m.to_wire() for m in result.messages],
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "pages": result.pages,
            },
        },
    }


@router.post("/send/{recipient_id}")
async def send_message(
    recipient_id: str,
    body: SendMessageBody,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    sessions: SessionManager = Depends(get_sessions),
) -> dict:
    """Send a message to a connection, creating the conversation if needed.

    Same semantics as the realtime ``send_message`` event; the message is
    also pushed to the recipient's live connections, if any.
    """
    message, conversation = await service.send_message(user_id, recipient_id, body.content)
    delivered = await sessions.deliver_message(message, conversation, recipient_id)
    logger.info(f"[chat] REST message {message.id} from {user_id} pushed to {delivered} sockets")
    return {
        "success": True,
        "data": {"message": message.to_wire(), "conversationId": conversation.id},
    }


@router.get("/unread")
async def unread_count(
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Total unread messages across all of the caller's conversations."""
    total = await service.unread_total(user_id)
    return {"success": True, "data": {"unreadCount": total}}


@router.put("/read/{conversation_id}")
async def mark_read(
    conversation_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    sessions: SessionManager = Depends(get_sessions),
) -> dict:
    """Mark every message in a conversation as read by the caller."""
    conversation, count = await service.mark_read(conversation_id, user_id)
    await sessions.notify_read(conversation, user_id, count)
    return {"success": True, "message": "Messages marked as read", "data": {"count": count}}


@router.delete("/message/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Soft-delete one of the caller's own messages. Repeating is a no-op."""
    message = await service.delete_message(message_id, user_id)
    return {"success": True, "message": "Message deleted", "data": message.to_wire()}

"""Chat domain operations shared by the realtime and REST paths.

ChatService combines the ChatStore with the identity oracle's permission
checks. Every storage or oracle call is awaited through the threadpool, so a
slow DuckDB query suspends only the handler waiting on it.
"""
import logging
from typing import List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from collera.errors import AuthorizationError, NotFoundError, PersistenceError
from collera.identity.base import IdentityOracle
from .schemas import Conversation, Message, MessagePage
from .store import ChatStore, sorted_pair

logger = logging.getLogger(__name__)


class ChatService:
    """Conversation and message operations with permission checks."""

    def __init__(
        self,
        store: ChatStore,
        oracle: IdentityOracle,
        default_page_size: int = 50,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # =========================================================================
    # Conversations
    # =========================================================================

    async def open_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        """Get or create the conversation with a connection ("open chat")."""
        await self._require_connection(user_id, other_user_id)
        return await run_in_threadpool(
            self.store.find_or_create_conversation, user_id, other_user_id
        )

    async def get_participant_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Return the conversation if ``user_id`` takes part in it.

        Raises:
            NotFoundError: Unknown id, or the user is not a participant.
        """
        conversation = await run_in_threadpool(self.store.get_conversation, conversation_id)
        if conversation is None or not conversation.has_participant(user_id):
            raise NotFoundError("Conversation not found")
        return conversation

    async def list_conversations(self, user_id: str) -> List[dict]:
        """Summaries for the conversation list, most recent first."""
        conversations = await run_in_threadpool(self.store.list_conversations_for, user_id)
        summaries = []
        for conv in conversations:
            other_id = conv.other_participant(user_id)
            participant = await run_in_threadpool(self.oracle.get_user_summary, other_id)
            last_message = None
            if conv.lastMessageId:
                message = await run_in_threadpool(self.store.get_message, conv.lastMessageId)
                if message is not None:
                    last_message = {
                        "id": message.id,
                        "content": message.content,
                        "senderId": message.senderId,
                        "createdAt": message.createdAt.isoformat(),
                    }
            summaries.append({
                "conversationId": conv.id,
                "participant": participant or {"id": other_id},
                "lastMessage": last_message,
                "lastMessageAt": conv.lastMessageAt.isoformat() if conv.lastMessageAt else None,
                "unreadCount": conv.unread_for(user_id),
            })
        return summaries

    async def unread_total(self, user_id: str) -> int:
        return await run_in_threadpool(self.store.unread_total, user_id)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        conversation_id: Optional[str] = None,
    ) -> Tuple[Message, Conversation]:
        """Persist a message and apply its unread-counter side effect.

        Nothing is written unless the content is valid and the recipient is
        an established connection of the sender.

        Returns:
            Tuple of (message, conversation after the counter update).
        """
        text = self.store.validate_content(content)
        await self._require_connection(sender_id, recipient_id)

        if conversation_id:
            conversation = await run_in_threadpool(self.store.get_conversation, conversation_id)
            if conversation is None or sorted(conversation.participants) != list(
                sorted_pair(sender_id, recipient_id)
            ):
                raise NotFoundError("Conversation not found")
        else:
            conversation = await run_in_threadpool(
                self.store.find_or_create_conversation, sender_id, recipient_id
            )

        message = await run_in_threadpool(
            self.store.append_message, conversation.id, sender_id, text
        )
        try:
            conversation = await run_in_threadpool(
                self.store.record_delivery, conversation.id, message, recipient_id
            )
        except PersistenceError:
            # Message is stored; only the cached counter/pointer drifted.
            logger.warning(
                "[ChatService] Unread counter update lost for message %s in %s",
                message.id, conversation.id,
            )
        return message, conversation

    async def mark_read(self, conversation_id: str, reader_id: str) -> Tuple[Conversation, int]:
        """Mark everything in a conversation read for ``reader_id``.

        Returns:
            Tuple of (conversation, number of newly read messages).
        """
        conversation = await self.get_participant_conversation(conversation_id, reader_id)
        count = await run_in_threadpool(self.store.mark_read, conversation_id, reader_id)
        return conversation, count

    async def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> MessagePage:
        """Chronological page of history; marks the conversation read for the caller."""
        await self.get_participant_conversation(conversation_id, user_id)
        limit = min(limit or self.default_page_size, self.max_page_size)
        await run_in_threadpool(self.store.mark_read, conversation_id, user_id)
        return await run_in_threadpool(self.store.list_messages, conversation_id, page, limit)

    async def delete_message(self, message_id: str, user_id: str) -> Message:
        return await run_in_threadpool(self.store.soft_delete, message_id, user_id)

    # =========================================================================
    # Internal
    # =========================================================================

    async def _require_connection(self, user_id: str, other_user_id: str) -> None:
        if not await run_in_threadpool(self.oracle.user_exists, other_user_id):
            raise NotFoundError("User not found")
        if not await run_in_threadpool(self.oracle.is_connection, user_id, other_user_id):
            raise AuthorizationError("You can only message your connections")

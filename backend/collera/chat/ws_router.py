"""WebSocket endpoint for realtime direct messaging.

Protocol Flow:
    1. Client connects to /ws/chat?token=<jwt> (or sends an
       ``Authorization: Bearer`` header).
       → Invalid credential: socket closed with code 1008, nothing registered
       → Otherwise the user's online connections receive
         {type: "user_online"}, then the server sends
         {type: "connected", userId, connectionId}
    2. Client sends events as JSON objects with a ``type`` field:
       send_message, typing_start, typing_stop, mark_read,
       connection_request, connection_accepted
    3. On disconnect the connection is deregistered; if it was the user's
       last one, their connections receive {type: "user_offline"}.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from collera.deps import bearer_token
from collera.errors import ChatValidationError
from .manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
) -> None:
    """Run one realtime connection from authentication to close.

    Events are handled one at a time in arrival order; the session's close
    hook runs exactly once whichever way the loop ends.
    """
    sessions: SessionManager = websocket.app.state.sessions
    credential = token or bearer_token(websocket.headers.get("authorization"))

    session = await sessions.open(websocket, credential)
    if session is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await sessions.send_error(
                    session, ChatValidationError("Malformed JSON", code="invalid_json")
                )
                continue
            await sessions.dispatch(session, data)
    except WebSocketDisconnect as e:
        logger.info(f"[WS] Connection {session.id} closed by client (code={e.code})")
    finally:
        await sessions.close(session)

"""Realtime session manager for direct messaging.

This module owns every live WebSocket connection and routes inbound events to
the ChatService, pushing outbound events to the right peers through the
PresenceRegistry.

Connection lifecycle:
    CONNECTING -> AUTHENTICATING -> ACTIVE -> CLOSED

    - Authentication failure goes straight to CLOSED: the socket is refused
      (close code 1008) and nothing is registered.
    - On ACTIVE the connection is registered in the presence registry, the
      user is persisted as online and their established connections are told.
    - close() runs exactly once per session; when it removes the user's last
      connection the user is persisted as offline and their connections told.

Inbound events (client -> server):
    send_message, typing_start, typing_stop, mark_read,
    connection_request, connection_accepted

Outbound events (server -> client):
    connected, new_message, message_sent, user_typing, user_stopped_typing,
    messages_read, user_online, user_offline, new_connection_request,
    connection_accepted_notification, error

Errors are only ever sent to the connection that caused them.

Thread Safety:
    Designed for a single asyncio event loop. Storage I/O is awaited through
    the threadpool, so events from different connections interleave while a
    handler waits on the database. Register/deregister and the presence
    writes and notifications that follow them hold a per-user asyncio.Lock,
    so a reconnect cannot interleave with the user's offline transition.

Performance Notes:
    - Fan-out uses asyncio.gather() for concurrent delivery to every socket
    - A failed send is logged and does not abort delivery to other sockets;
      the failed connection is no longer written to
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from collera.errors import AuthenticationError, ChatError, ChatValidationError
from collera.identity.base import IdentityOracle
from .presence import PresenceRegistry
from .schemas import (
    Conversation,
    InboundEvent,
    MarkReadPayload,
    Message,
    OutboundEvent,
    RelayPayload,
    SendMessagePayload,
    TypingPayload,
)
from .service import ChatService

logger = logging.getLogger(__name__)

# Policy Violation; sent when the credential is rejected
AUTH_FAILURE_CLOSE_CODE = 1008


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


class _UserLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class ChatSession:
    """One realtime connection.

    A session only references its user id; the presence registry owns the
    user -> connections mapping.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id: Optional[str] = None
        self.state = ConnectionState.CONNECTING

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE


class SessionManager:
    """Authenticates sockets, tracks presence and dispatches chat events."""

    def __init__(
        self,
        registry: PresenceRegistry,
        service: ChatService,
        oracle: IdentityOracle,
    ) -> None:
        self.registry = registry
        self.service = service
        self.oracle = oracle

        # connection id -> WebSocket, for every ACTIVE session
        self.sockets: Dict[str, WebSocket] = {}

        # user id -> lock held while that user's presence changes
        self._presence_locks: Dict[str, _UserLock] = {}

        self._handlers: Dict[str, Callable[[ChatSession, dict], Awaitable[None]]] = {
            InboundEvent.SEND_MESSAGE.value: self.handle_send_message,
            InboundEvent.TYPING_START.value: self.handle_typing_start,
            InboundEvent.TYPING_STOP.value: self.handle_typing_stop,
            InboundEvent.MARK_READ.value: self.handle_mark_read,
            InboundEvent.CONNECTION_REQUEST.value: self.handle_connection_request,
            InboundEvent.CONNECTION_ACCEPTED.value: self.handle_connection_accepted,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self, websocket: WebSocket, credential: Optional[str]) -> Optional[ChatSession]:
        """Authenticate and activate a new connection.

        Returns:
            The ACTIVE session, or None if the credential was rejected (the
            socket has already been closed in that case).
        """
        session = ChatSession(websocket)
        session.state = ConnectionState.AUTHENTICATING
        try:
            user_id = await run_in_threadpool(self.oracle.authenticate, credential)
        except AuthenticationError as e:
            logger.info(f"[WS] Rejected connection {session.id}: {e.message}")
            session.state = ConnectionState.CLOSED
            await websocket.close(code=AUTH_FAILURE_CLOSE_CODE)
            return None

        await websocket.accept()
        session.user_id = user_id
        async with self._presence_guard(user_id):
            self.sockets[session.id] = websocket
            self.registry.register(user_id, session.id)
            session.state = ConnectionState.ACTIVE
            logger.info(
                f"[WS] {user_id} connected ({session.id}); "
                f"{len(self.registry.connections_for(user_id))} live connections"
            )

            await self._persist_presence(user_id, True, datetime.utcnow())
            await self.notify_connections(user_id, {
                "type": OutboundEvent.USER_ONLINE.value,
                "userId": user_id,
            })
        # Sent last: once the client sees it, the connect fan-out is done
        await self._safe_send(websocket, {
            "type": OutboundEvent.CONNECTED.value,
            "userId": user_id,
            "connectionId": session.id,
        })
        return session

    async def close(self, session: ChatSession) -> None:
        """Tear down a session. Safe to call more than once; runs once."""
        if session.state is ConnectionState.CLOSED:
            return
        was_active = session.is_active
        session.state = ConnectionState.CLOSED
        if not was_active:
            return

        self.sockets.pop(session.id, None)
        user_id = session.user_id
        async with self._presence_guard(user_id):
            went_offline = self.registry.deregister(user_id, session.id)
            logger.info(f"[WS] {user_id} disconnected ({session.id}), offline={went_offline}")
            if not went_offline:
                return

            last_seen = datetime.utcnow()
            await self._persist_presence(user_id, False, last_seen)
            await self.notify_connections(user_id, {
                "type": OutboundEvent.USER_OFFLINE.value,
                "userId": user_id,
                "lastSeen": last_seen.isoformat(),
            })

    @asynccontextmanager
    async def _presence_guard(self, user_id: str) -> AsyncIterator[None]:
        """Serialize register/deregister and their side effects per user.

        A reconnect that arrives while the user's last connection is still
        persisting its offline state waits here, so the stored flag and the
        friend notifications always end in the registry's final state.
        """
        guard = self._presence_locks.get(user_id)
        if guard is None:
            guard = self._presence_locks[user_id] = _UserLock()
        guard.holders += 1
        try:
            async with guard.lock:
                yield
        finally:
            guard.holders -= 1
            if guard.holders == 0:
                del self._presence_locks[user_id]

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, session: ChatSession, data: dict) -> None:
        """Run the handler for one inbound event to completion."""
        if not session.is_active:
            return

        event_type = data.get("type") if isinstance(data, dict) else None
        if not isinstance(event_type, str):
            event_type = None
        handler = self._handlers.get(event_type)
        if handler is None:
            await self.send_error(
                session,
                ChatError(f"Unknown event type: {event_type}", code="unknown_event"),
                event_type,
            )
            return

        logger.debug("[WS] %s -> %s", session.user_id, event_type)
        try:
            await handler(session, data)
        except ValidationError as e:
            await self.send_error(session, ChatValidationError(_first_error(e)), event_type)
        except ChatError as e:
            await self.send_error(session, e, event_type)

    async def handle_send_message(self, session: ChatSession, data: dict) -> None:
        payload = SendMessagePayload.model_validate(data)
        try:
            message, conversation = await self.service.send_message(
                session.user_id,
                payload.recipientId,
                payload.content,
                payload.conversationId,
            )
        except ChatError as e:
            if e.status_code >= 500:
                logger.error(f"[WS] Send from {session.user_id} to {payload.recipientId} failed: {e}")
            raise

        delivered = await self.deliver_message(message, conversation, payload.recipientId)
        await self._safe_send(session.websocket, {
            "type": OutboundEvent.MESSAGE_SENT.value,
            "conversationId": conversation.id,
            "message": message.to_wire(),
            "delivered": delivered > 0,
        })

    async def handle_typing_start(self, session: ChatSession, data: dict) -> None:
        await self._relay_typing(session, data, OutboundEvent.USER_TYPING)

    async def handle_typing_stop(self, session: ChatSession, data: dict) -> None:
        await self._relay_typing(session, data, OutboundEvent.USER_STOPPED_TYPING)

    async def handle_mark_read(self, session: ChatSession, data: dict) -> None:
        payload = MarkReadPayload.model_validate(data)
        conversation, count = await self.service.mark_read(payload.conversationId, session.user_id)
        await self.notify_read(conversation, session.user_id, count)

    async def handle_connection_request(self, session: ChatSession, data: dict) -> None:
        await self._relay(session, data, OutboundEvent.NEW_CONNECTION_REQUEST)

    async def handle_connection_accepted(self, session: ChatSession, data: dict) -> None:
        await self._relay(session, data, OutboundEvent.CONNECTION_ACCEPTED_NOTIFICATION)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def deliver_message(self, message: Message, conversation: Conversation, recipient_id: str) -> int:
        """Push a stored message to every live connection of the recipient."""
        return await self.send_to_user(recipient_id, {
            "type": OutboundEvent.NEW_MESSAGE.value,
            "conversationId": conversation.id,
            "message": message.to_wire(),
        })

    async def notify_read(self, conversation: Conversation, reader_id: str, count: int) -> int:
        """Tell the other participant that ``reader_id`` read the conversation."""
        return await self.send_to_user(conversation.other_participant(reader_id), {
            "type": OutboundEvent.MESSAGES_READ.value,
            "conversationId": conversation.id,
            "readBy": reader_id,
            "readAt": datetime.utcnow().isoformat(),
            "count": count,
        })

    async def notify_connections(self, user_id: str, event: dict) -> None:
        """Send an event to every online established connection of a user."""
        try:
            friends = await run_in_threadpool(self.oracle.established_connections_of, user_id)
        except ChatError as e:
            logger.error(f"[WS] Could not load connections of {user_id}: {e}")
            return
        online = [f for f in friends if self.registry.is_online(f)]
        if online:
            await asyncio.gather(*[self.send_to_user(f, event) for f in online])

    async def send_to_user(self, user_id: str, event: dict) -> int:
        """Send an event to all live connections of a user concurrently.

        Returns:
            Number of connections the event was written to. Zero when the
            user is offline; nothing is queued for later.
        """
        targets: List[Tuple[str, WebSocket]] = [
            (cid, self.sockets[cid])
            for cid in self.registry.connections_for(user_id)
            if cid in self.sockets
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *[self._safe_send(ws, event) for _, ws in targets],
            return_exceptions=True,
        )
        failed = [cid for (cid, _), ok in zip(targets, results) if ok is not True]
        self._cleanup_connections(failed)
        return len(targets) - len(failed)

    async def send_error(self, session: ChatSession, error: ChatError, event: Optional[str] = None) -> None:
        logger.info(f"[WS] Error for {session.user_id} on {event}: {error.code} {error.message}")
        await self._safe_send(session.websocket, error.to_event(event))

    # =========================================================================
    # Internal
    # =========================================================================

    async def _relay_typing(self, session: ChatSession, data: dict, out: OutboundEvent) -> None:
        payload = TypingPayload.model_validate(data)
        extra = dict(payload.model_extra or {})
        extra.pop("type", None)
        await self.send_to_user(payload.recipientId, {
            **extra,
            "type": out.value,
            "userId": session.user_id,
            "conversationId": payload.conversationId,
        })

    async def _relay(self, session: ChatSession, data: dict, out: OutboundEvent) -> None:
        payload = RelayPayload.model_validate(data)
        extra = dict(payload.model_extra or {})
        extra.pop("type", None)
        delivered = await self.send_to_user(payload.targetUserId, {
            **extra,
            "type": out.value,
            "fromUserId": session.user_id,
        })
        logger.debug(f"[WS] Relayed {out.value} to {payload.targetUserId} ({delivered} sockets)")

    async def _persist_presence(self, user_id: str, online: bool, last_seen: datetime) -> None:
        try:
            await run_in_threadpool(self.oracle.set_presence, user_id, online, last_seen)
        except ChatError as e:
            logger.error(f"[WS] Failed to persist presence for {user_id}: {e}")

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        """Stop writing to connections whose last send failed.

        Only the socket map is pruned. The registry entry stays until the
        connection's receive loop ends and runs close(), which owns the
        offline transition.
        """
        for cid in failed_connections:
            if self.sockets.pop(cid, None) is not None:
                logger.info(f"[WS] Dropped unreachable connection {cid}")

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid event payload"
    first = details[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "invalid")

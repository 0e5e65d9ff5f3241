"""Pydantic schemas for the chat module.

Stored records (Conversation, Message) plus the inbound realtime event
payloads. Field names are camelCase because they are serialized to clients
as-is.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Stored records
# =============================================================================


class ReadReceipt(BaseModel):
    userId: str
    readAt: datetime


class Message(BaseModel):
    """One chat message within exactly one conversation."""
    id: str
    conversationId: str
    senderId: str
    content: str
    readBy: List[ReadReceipt] = Field(default_factory=list)
    isDeleted: bool = False
    createdAt: datetime

    def is_read_by(self, user_id: str) -> bool:
        return any(r.userId == user_id for r in self.readBy)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class Conversation(BaseModel):
    """Pairwise conversation with cached unread counters.

    Attributes:
        participants: The two participant ids, sorted.
        unreadCount: participant id -> number of unread messages.
    """
    id: str
    participants: List[str]
    lastMessageId: Optional[str] = None
    lastMessageAt: Optional[datetime] = None
    unreadCount: Dict[str, int] = Field(default_factory=dict)
    createdAt: datetime

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        a, b = self.participants
        return b if a == user_id else a

    def unread_for(self, user_id: str) -> int:
        return self.unreadCount.get(user_id, 0)


class MessagePage(BaseModel):
    """One page of history, chronological."""
    messages: List[Message]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


# =============================================================================
# Realtime events
# =============================================================================


class InboundEvent(str, Enum):
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    MARK_READ = "mark_read"
    CONNECTION_REQUEST = "connection_request"
    CONNECTION_ACCEPTED = "connection_accepted"


class OutboundEvent(str, Enum):
    CONNECTED = "connected"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    MESSAGES_READ = "messages_read"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    NEW_CONNECTION_REQUEST = "new_connection_request"
    CONNECTION_ACCEPTED_NOTIFICATION = "connection_accepted_notification"
    ERROR = "error"


class SendMessagePayload(BaseModel):
    recipientId: str = Field(..., min_length=1)
    content: str
    conversationId: Optional[str] = None


class TypingPayload(BaseModel):
    """Typing indicator; extra client fields are relayed as-is."""
    model_config = ConfigDict(extra="allow")

    recipientId: str = Field(..., min_length=1)
    conversationId: Optional[str] = None


class MarkReadPayload(BaseModel):
    conversationId: str = Field(..., min_length=1)


class RelayPayload(BaseModel):
    """Connection-graph notification; extra client fields are relayed as-is."""
    model_config = ConfigDict(extra="allow")

    targetUserId: str = Field(..., min_length=1)


class SendMessageBody(BaseModel):
    """REST body for POST /api/chat/send/{user_id}."""
    content: str

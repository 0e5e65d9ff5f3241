"""Direct messaging: presence, realtime sessions, conversation storage.

Components:
    - PresenceRegistry: user id -> live connection ids
    - SessionManager: WebSocket lifecycle and event routing
    - ChatService: permission-checked conversation/message operations
    - ChatStore: DuckDB persistence
"""

from .manager import ChatSession, ConnectionState, SessionManager
from .presence import PresenceRegistry
from .service import ChatService
from .store import ChatStore

__all__ = [
    "ChatSession",
    "ChatService",
    "ChatStore",
    "ConnectionState",
    "PresenceRegistry",
    "SessionManager",
]

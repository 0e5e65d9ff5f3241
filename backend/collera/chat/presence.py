"""In-memory presence registry.

Tracks, per user id, the set of live realtime connection ids so one user can
be online from several tabs or devices at once. An entry exists only while
its set is non-empty.

The registry is process-local and never persisted: a restart begins with
every user offline, and presence is rebuilt as clients reconnect. Multiple
server instances each see only their own connections.

Thread Safety:
    Designed for a single asyncio event loop. No method awaits, so each
    register/deregister runs to completion before any other coroutine can
    touch the same user's entry.
"""
import logging
from typing import Dict, FrozenSet, List, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Maps user id -> set of live connection ids."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = {}

    def register(self, user_id: str, connection_id: str) -> bool:
        """Add a connection for a user. Idempotent.

        Returns:
            True if the user had no live connection before this call.
        """
        connections = self._connections.get(user_id)
        if connections is None:
            self._connections[user_id] = {connection_id}
            logger.info("[Presence] %s is online (connection %s)", user_id, connection_id)
            return True
        connections.add(connection_id)
        logger.debug("[Presence] %s now has %d connections", user_id, len(connections))
        return False

    def deregister(self, user_id: str, connection_id: str) -> bool:
        """Remove a connection for a user.

        Returns:
            True if this removed the user's last connection (user is now
            fully offline). Unknown pairs return False.
        """
        connections = self._connections.get(user_id)
        if connections is None or connection_id not in connections:
            return False
        connections.discard(connection_id)
        if connections:
            return False
        del self._connections[user_id]
        logger.info("[Presence] %s is offline", user_id)
        return True

    def connections_for(self, user_id: str) -> FrozenSet[str]:
        """Snapshot of a user's live connection ids (possibly empty)."""
        return frozenset(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def online_users(self) -> List[str]:
        return list(self._connections)

    def clear(self) -> None:
        self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)

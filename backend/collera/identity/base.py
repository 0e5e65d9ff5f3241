"""IdentityOracle abstract interface.

The chat core never owns user accounts or the connection graph. It talks to
whatever implements this interface: a credential check, the "may these two
users message each other" question, and the presence fields (online flag,
last seen) the realtime layer keeps current.

Implementations are synchronous; the chat layer calls them through the
threadpool so they never block the event loop.

Usage:
    from collera.identity import UserDirectory

    oracle = UserDirectory(db_path=":memory:", secret_key="...")
    user_id = oracle.authenticate(token)
    if oracle.is_connection(user_id, other_id):
        ...
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Set


class IdentityOracle(ABC):
    """Abstract identity and connection-graph provider."""

    @abstractmethod
    def authenticate(self, credential: Optional[str]) -> str:
        """Exchange a bearer credential for a user id.

        Raises:
            AuthenticationError: If the credential is missing or invalid, or
                the user it names no longer exists.
        """

    @abstractmethod
    def is_connection(self, user_id: str, other_user_id: str) -> bool:
        """Return True if the two users have an established connection."""

    @abstractmethod
    def established_connections_of(self, user_id: str) -> Set[str]:
        """Return the ids of every established connection of a user."""

    @abstractmethod
    def user_exists(self, user_id: str) -> bool:
        """Return True if the user id is known."""

    @abstractmethod
    def get_user_summary(self, user_id: str) -> Optional[dict]:
        """Return the public profile fields shown next to chat messages."""

    @abstractmethod
    def set_presence(self, user_id: str, online: bool, last_seen: datetime) -> None:
        """Persist the user's online flag and last-seen timestamp."""

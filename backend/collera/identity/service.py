"""DuckDB-backed user directory.

Minimal implementation of the IdentityOracle contract so the chat backend
runs stand-alone. Account registration, e-mail verification and the
connection-request workflow live elsewhere; this module only stores what the
chat core reads (profile summary, verification flag, established connections)
and what it writes (online flag, last seen).

Database Schema:
    users table:
        - id, first_name, last_name, college_name, profile_picture
        - is_verified, is_online, last_seen
    connections table:
        - user_low, user_high: the connected pair, stored sorted

Credentials are HS256 JWTs carrying ``{"id": <user id>, "exp": ...}``.
"""
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

import duckdb
import jwt

from collera.errors import AuthenticationError, NotFoundError, PersistenceError
from .base import IdentityOracle

logger = logging.getLogger(__name__)

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id              VARCHAR PRIMARY KEY,
    first_name      VARCHAR NOT NULL,
    last_name       VARCHAR NOT NULL,
    college_name    VARCHAR NOT NULL DEFAULT '',
    profile_picture VARCHAR NOT NULL DEFAULT '',
    is_verified     BOOLEAN NOT NULL DEFAULT TRUE,
    is_online       BOOLEAN NOT NULL DEFAULT FALSE,
    last_seen       TIMESTAMP
)
"""

_CREATE_CONNECTIONS = """
CREATE TABLE IF NOT EXISTS connections (
    user_low  VARCHAR NOT NULL,
    user_high VARCHAR NOT NULL,
    PRIMARY KEY (user_low, user_high)
)
"""


def _pair(a: str, b: str) -> tuple:
    return (a, b) if a <= b else (b, a)


class UserDirectory(IdentityOracle):
    """User and connection lookups backed by an embedded DuckDB file.

    One connection is shared by all callers; a lock serializes access since
    the DuckDB connection object is not thread-safe.
    """

    _COLUMNS = [
        "id", "first_name", "last_name", "college_name", "profile_picture",
        "is_verified", "is_online", "last_seen",
    ]

    def __init__(
        self,
        db_path: str = "collera.duckdb",
        secret_key: str = "change-me-in-production",
        algorithm: str = "HS256",
        token_expire_days: int = 7,
        require_verified: bool = True,
    ) -> None:
        self._db_path = db_path
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._token_expire = timedelta(days=token_expire_days)
        self._require_verified = require_verified
        self._lock = threading.Lock()
        self._conn = duckdb.connect(db_path)
        self._conn.execute(_CREATE_USERS)
        self._conn.execute(_CREATE_CONNECTIONS)
        logger.info("[UserDirectory] Initialized with db=%s", db_path)

    # -----------------------------------------------------------------------
    # Seeding
    # -----------------------------------------------------------------------

    def create_user(
        self,
        first_name: str,
        last_name: str,
        college_name: str = "",
        profile_picture: str = "",
        is_verified: bool = True,
        user_id: Optional[str] = None,
    ) -> dict:
        user_id = user_id or uuid.uuid4().hex
        with self._lock:
            self._execute(
                """
                INSERT INTO users
                  (id, first_name, last_name, college_name, profile_picture,
                   is_verified, is_online, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, FALSE, ?)
                """,
                [user_id, first_name, last_name, college_name, profile_picture,
                 is_verified, datetime.utcnow()],
            )
        logger.info("[UserDirectory] Created user %s", user_id)
        return self.get_user_summary(user_id)

    def add_connection(self, user_id: str, other_user_id: str) -> None:
        """Record an established connection between two existing users."""
        if user_id == other_user_id:
            raise ValueError("A user cannot connect to themselves")
        for uid in (user_id, other_user_id):
            if not self.user_exists(uid):
                raise NotFoundError(f"User {uid} not found")
        low, high = _pair(user_id, other_user_id)
        with self._lock:
            self._execute(
                "INSERT INTO connections (user_low, user_high) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                [low, high],
            )

    def issue_token(self, user_id: str) -> str:
        """Sign a bearer credential for a user."""
        payload = {
            "id": user_id,
            "exp": datetime.now(tz=timezone.utc) + self._token_expire,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    # -----------------------------------------------------------------------
    # IdentityOracle
    # -----------------------------------------------------------------------

    def authenticate(self, credential: Optional[str]) -> str:
        if not credential:
            raise AuthenticationError("Please log in to access this resource")
        try:
            payload = jwt.decode(
                credential, self._secret_key, algorithms=[self._algorithm]
            )
        except jwt.PyJWTError as e:
            logger.debug("[UserDirectory] Rejected token: %s", e)
            raise AuthenticationError("Invalid token. Please log in again") from e

        user_id = payload.get("id")
        user = self._fetch_user(user_id) if user_id else None
        if user is None:
            raise AuthenticationError("User no longer exists")
        if self._require_verified and not user["is_verified"]:
            raise AuthenticationError("Please verify your email first")
        return user_id

    def is_connection(self, user_id: str, other_user_id: str) -> bool:
        low, high = _pair(user_id, other_user_id)
        with self._lock:
            row = self._execute(
                "SELECT 1 FROM connections WHERE user_low = ? AND user_high = ?",
                [low, high],
            ).fetchone()
        return row is not None

    def established_connections_of(self, user_id: str) -> Set[str]:
        with self._lock:
            rows = self._execute(
                """
                SELECT user_high FROM connections WHERE user_low = ?
                UNION
                SELECT user_low FROM connections WHERE user_high = ?
                """,
                [user_id, user_id],
            ).fetchall()
        return {r[0] for r in rows}

    def user_exists(self, user_id: str) -> bool:
        return self._fetch_user(user_id) is not None

    def get_user_summary(self, user_id: str) -> Optional[dict]:
        user = self._fetch_user(user_id)
        if user is None:
            return None
        last_seen = user["last_seen"]
        return {
            "id": user["id"],
            "firstName": user["first_name"],
            "lastName": user["last_name"],
            "collegeName": user["college_name"],
            "profilePicture": user["profile_picture"],
            "isOnline": user["is_online"],
            "lastSeen": last_seen.isoformat() if last_seen else None,
        }

    def set_presence(self, user_id: str, online: bool, last_seen: datetime) -> None:
        with self._lock:
            self._execute(
                "UPDATE users SET is_online = ?, last_seen = ? WHERE id = ?",
                [online, last_seen, user_id],
            )

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _execute(self, sql: str, params: Optional[list] = None) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise PersistenceError("User directory is closed")
        try:
            return self._conn.execute(sql, params or [])
        except duckdb.ConstraintException:
            raise
        except duckdb.Error as e:
            logger.exception("[UserDirectory] Query failed")
            raise PersistenceError("User directory unavailable") from e

    def _fetch_user(self, user_id: str) -> Optional[dict]:
        with self._lock:
            row = self._execute(
                f"SELECT {', '.join(self._COLUMNS)} FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        return dict(zip(self._COLUMNS, row)) if row else None

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

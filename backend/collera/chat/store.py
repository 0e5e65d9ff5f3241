"""DuckDB-backed conversation and message storage.

Database Schema:
    conversations table:
        - id: Conversation id (uuid hex)
        - participant_low / participant_high: the participant pair, sorted.
          UNIQUE, so one conversation exists per unordered pair.
        - last_message_id, last_message_at: pointer to the newest message
        - created_at
    conversation_unread table:
        - (conversation_id, user_id) -> unread_count
    messages table:
        - id, conversation_id, sender_id, content, is_deleted, created_at
        - seq: insertion order, used for stable newest-first paging
    read_receipts table:
        - (message_id, user_id) -> read_at

Thread Safety:
    The DuckDB connection is NOT thread-safe. Every public method holds
    ``self._lock`` for its whole duration, so callers may invoke the store
    from threadpool workers. Individual methods are transactional; sequences
    of calls (append + record_delivery) are not.

Usage:
    store = ChatStore(db_path=":memory:")
    conv = store.find_or_create_conversation("alice", "bob")
    msg = store.append_message(conv.id, "alice", "hi")
    store.record_delivery(conv.id, msg, "bob")
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

import duckdb

from collera.errors import (
    AuthorizationError,
    ChatValidationError,
    NotFoundError,
    PersistenceError,
)
from .schemas import Conversation, Message, MessagePage, ReadReceipt

logger = logging.getLogger(__name__)

DELETED_PLACEHOLDER = "This message was deleted"

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id               VARCHAR PRIMARY KEY,
        participant_low  VARCHAR NOT NULL,
        participant_high VARCHAR NOT NULL,
        last_message_id  VARCHAR,
        last_message_at  TIMESTAMP,
        created_at       TIMESTAMP NOT NULL,
        UNIQUE (participant_low, participant_high)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_unread (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        unread_count    INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (conversation_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT DEFAULT nextval('messages_seq'),
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        is_deleted      BOOLEAN NOT NULL DEFAULT FALSE,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    """
    CREATE TABLE IF NOT EXISTS read_receipts (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        read_at    TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
]

_CONVERSATION_COLUMNS = (
    "id, participant_low, participant_high, last_message_id, last_message_at, created_at"
)
_MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, is_deleted, created_at"


def sorted_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class ChatStore:
    """Persistence for conversations, messages and read receipts."""

    def __init__(
        self,
        db_path: str = "collera.duckdb",
        max_content_length: int = 2000,
        deleted_placeholder: str = DELETED_PLACEHOLDER,
    ) -> None:
        self._db_path = db_path
        self.max_content_length = max_content_length
        self.deleted_placeholder = deleted_placeholder
        self._lock = threading.RLock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        logger.info("[ChatStore] Initialized with db=%s", db_path)

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def find_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the conversation for an unordered pair, creating it if absent.

        The UNIQUE constraint on the sorted pair makes creation race-free at
        the storage level: a conflicting insert is retried as a lookup.
        """
        if user_a == user_b:
            raise ChatValidationError("You cannot start a conversation with yourself")
        low, high = sorted_pair(user_a, user_b)

        with self._lock:
            existing = self._find_by_pair(low, high)
            if existing is not None:
                return existing

            conversation_id = uuid.uuid4().hex
            now = datetime.utcnow()
            try:
                with self._transaction():
                    self._conn.execute(
                        f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) "
                        "VALUES (?, ?, ?, NULL, NULL, ?)",
                        [conversation_id, low, high, now],
                    )
                    self._conn.executemany(
                        "INSERT INTO conversation_unread (conversation_id, user_id, unread_count) "
                        "VALUES (?, ?, 0)",
                        [[conversation_id, low], [conversation_id, high]],
                    )
            except duckdb.ConstraintException:
                logger.info("[ChatStore] Conversation for %s/%s created concurrently", low, high)
                existing = self._find_by_pair(low, high)
                if existing is None:
                    raise PersistenceError("Failed to create conversation")
                return existing

            logger.info("[ChatStore] Created conversation %s for %s/%s", conversation_id, low, high)
            return self._get_conversation(conversation_id)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._get_conversation(conversation_id)

    def list_conversations_for(self, user_id: str) -> List[Conversation]:
        """All conversations of a user, most recently active first."""
        with self._lock:
            rows = self._execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                "WHERE participant_low = ? OR participant_high = ? "
                "ORDER BY COALESCE(last_message_at, created_at) DESC",
                [user_id, user_id],
            ).fetchall()
            unread = self._unread_maps([r[0] for r in rows])
            return [self._row_to_conversation(r, unread.get(r[0], {})) for r in rows]

    def unread_total(self, user_id: str) -> int:
        with self._lock:
            row = self._execute(
                "SELECT COALESCE(SUM(unread_count), 0) FROM conversation_unread WHERE user_id = ?",
                [user_id],
            ).fetchone()
        return int(row[0])

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def validate_content(self, content: Optional[str]) -> str:
        """Return the trimmed content or raise ChatValidationError."""
        text = (content or "").strip()
        if not text:
            raise ChatValidationError("Message content is required")
        if len(text) > self.max_content_length:
            raise ChatValidationError(
                f"Message content exceeds {self.max_content_length} characters"
            )
        return text

    def append_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Store a message with an initial read receipt for the sender.

        The unread-counter side effect is NOT applied here; callers follow up
        with ``record_delivery``.
        """
        text = self.validate_content(content)
        with self._lock:
            conversation = self._get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found")
            if not conversation.has_participant(sender_id):
                raise AuthorizationError("Sender is not a participant of this conversation")

            message_id = uuid.uuid4().hex
            now = datetime.utcnow()
            with self._transaction():
                self._conn.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, FALSE, ?)",
                    [message_id, conversation_id, sender_id, text, now],
                )
                self._conn.execute(
                    "INSERT INTO read_receipts (message_id, user_id, read_at) VALUES (?, ?, ?)",
                    [message_id, sender_id, now],
                )
            return self._get_message(message_id)

    def record_delivery(self, conversation_id: str, message: Message, recipient_id: str) -> Conversation:
        """Point the conversation at its newest message and bump the recipient counter."""
        with self._lock:
            with self._transaction():
                self._conn.execute(
                    "UPDATE conversations SET last_message_id = ?, last_message_at = ? WHERE id = ?",
                    [message.id, message.createdAt, conversation_id],
                )
                self._conn.execute(
                    "UPDATE conversation_unread SET unread_count = unread_count + 1 "
                    "WHERE conversation_id = ? AND user_id = ?",
                    [conversation_id, recipient_id],
                )
            return self._get_conversation(conversation_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._get_message(message_id)

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Add receipts for every message by others not yet read by reader.

        Soft-deleted messages never qualify. Zeroes the reader's counter.
        Re-invoking with nothing new to read changes nothing.

        Returns:
            Number of messages newly marked as read.
        """
        with self._lock:
            rows = self._execute(
                """
                SELECT m.id FROM messages m
                WHERE m.conversation_id = ?
                  AND m.sender_id <> ?
                  AND NOT m.is_deleted
                  AND NOT EXISTS (
                      SELECT 1 FROM read_receipts r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                """,
                [conversation_id, reader_id, reader_id],
            ).fetchall()
            now = datetime.utcnow()
            with self._transaction():
                if rows:
                    self._conn.executemany(
                        "INSERT INTO read_receipts (message_id, user_id, read_at) VALUES (?, ?, ?)",
                        [[r[0], reader_id, now] for r in rows],
                    )
                self._conn.execute(
                    "UPDATE conversation_unread SET unread_count = 0 "
                    "WHERE conversation_id = ? AND user_id = ? AND unread_count <> 0",
                    [conversation_id, reader_id],
                )
        if rows:
            logger.debug("[ChatStore] %s read %d messages in %s", reader_id, len(rows), conversation_id)
        return len(rows)

    def soft_delete(self, message_id: str, requesting_user_id: str) -> Message:
        """Replace a message's content with the placeholder and flag it deleted.

        Only the original sender may delete. Deleting an already-deleted
        message is a no-op.
        """
        with self._lock:
            message = self._get_message(message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.senderId != requesting_user_id:
                raise AuthorizationError("You can only delete your own messages")
            if message.isDeleted:
                return message
            self._execute(
                "UPDATE messages SET is_deleted = TRUE, content = ? WHERE id = ?",
                [self.deleted_placeholder, message_id],
            )
            logger.info("[ChatStore] Soft-deleted message %s", message_id)
            return self._get_message(message_id)

    def list_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> MessagePage:
        """One page of non-deleted messages, newest page first, chronological within."""
        page = max(page, 1)
        offset = (page - 1) * limit
        with self._lock:
            rows = self._execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? AND NOT is_deleted "
                "ORDER BY seq DESC LIMIT ? OFFSET ?",
                [conversation_id, limit, offset],
            ).fetchall()
            total = self._execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND NOT is_deleted",
                [conversation_id],
            ).fetchone()[0]
            receipts = self._receipts_for([r[0] for r in rows])
            messages = [self._row_to_message(r, receipts.get(r[0], [])) for r in rows]
        messages.reverse()
        return MessagePage(messages=messages, page=page, limit=limit, total=int(total))

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _execute(self, sql: str, params: Optional[list] = None) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise PersistenceError("Chat store is closed")
        try:
            return self._conn.execute(sql, params or [])
        except duckdb.Error as e:
            logger.exception("[ChatStore] Query failed")
            raise PersistenceError("Storage unavailable, please retry") from e

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        if self._conn is None:
            raise PersistenceError("Chat store is closed")
        self._conn.begin()
        try:
            yield
        except duckdb.ConstraintException:
            self._conn.rollback()
            raise
        except duckdb.Error as e:
            self._conn.rollback()
            logger.exception("[ChatStore] Transaction failed")
            raise PersistenceError("Storage unavailable, please retry") from e
        except Exception:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def _find_by_pair(self, low: str, high: str) -> Optional[Conversation]:
        row = self._execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
            "WHERE participant_low = ? AND participant_high = ?",
            [low, high],
        ).fetchone()
        if row is None:
            return None
        return self._row_to_conversation(row, self._unread_maps([row[0]]).get(row[0], {}))

    def _get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = self._execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            [conversation_id],
        ).fetchone()
        if row is None:
            return None
        return self._row_to_conversation(row, self._unread_maps([row[0]]).get(row[0], {}))

    def _get_message(self, message_id: str) -> Optional[Message]:
        row = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row, self._receipts_for([message_id]).get(message_id, []))

    def _unread_maps(self, conversation_ids: List[str]) -> Dict[str, Dict[str, int]]:
        if not conversation_ids:
            return {}
        placeholders = ", ".join("?" for _ in conversation_ids)
        rows = self._execute(
            "SELECT conversation_id, user_id, unread_count FROM conversation_unread "
            f"WHERE conversation_id IN ({placeholders})",
            list(conversation_ids),
        ).fetchall()
        maps: Dict[str, Dict[str, int]] = {}
        for conversation_id, user_id, count in rows:
            maps.setdefault(conversation_id, {})[user_id] = count
        return maps

    def _receipts_for(self, message_ids: List[str]) -> Dict[str, List[ReadReceipt]]:
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._execute(
            "SELECT message_id, user_id, read_at FROM read_receipts "
            f"WHERE message_id IN ({placeholders}) ORDER BY read_at, user_id",
            list(message_ids),
        ).fetchall()
        receipts: Dict[str, List[ReadReceipt]] = {}
        for message_id, user_id, read_at in rows:
            receipts.setdefault(message_id, []).append(ReadReceipt(userId=user_id, readAt=read_at))
        return receipts

    @staticmethod
    def _row_to_conversation(row, unread: Dict[str, int]) -> Conversation:
        conversation_id, low, high, last_id, last_at, created_at = row
        return Conversation(
            id=conversation_id,
            participants=[low, high],
            lastMessageId=last_id,
            lastMessageAt=last_at,
            unreadCount={low: unread.get(low, 0), high: unread.get(high, 0)},
            createdAt=created_at,
        )

    @staticmethod
    def _row_to_message(row, receipts: List[ReadReceipt]) -> Message:
        message_id, conversation_id, sender_id, content, is_deleted, created_at = row
        return Message(
            id=message_id,
            conversationId=conversation_id,
            senderId=sender_id,
            content=content,
            readBy=receipts,
            isDeleted=is_deleted,
            createdAt=created_at,
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

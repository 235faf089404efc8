"""
VeilChat - SQLite implementation of the backend contract.

Persists conversations, participant links and messages in a single SQLite
file so a client can run against a local store that survives restarts.
Change notifications are fanned out in-process through the same ChangeFeed
the in-memory backend uses.

Concurrency:
- Statements run synchronously on the event loop thread; each backend call
  yields to the loop once before touching the database, so concurrent
  coroutines interleave between statements as they do with the in-memory
  backend
- A threading.Lock guards every use of the shared connection
- The conditional key update is a single UPDATE ... WHERE encryption_key
  IS NULL statement, so it is atomic at the database level
"""

import asyncio
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import List, Optional

from .backend import Backend, ChangeEvent, ChangeFeed, TimestampClock
from .constants import EVENT_INSERT, TABLE_CONVERSATIONS, TABLE_MESSAGES, TABLE_PARTICIPANTS
from .errors import BackendError, ConversationNotFoundError, ErrorCode
from .models import ConversationRecord, MessageRecord, ParticipantRecord

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "id, conversation_id, sender_id, encrypted_content, iv, created_at, edited_at"


class SQLiteBackend(Backend):
    """
    Backend store kept in a local SQLite database.

    All database operations are protected by a threading.Lock to prevent
    concurrent access to the connection.
    """

    def __init__(self, db_path: Path, duplicate_deliveries: bool = False):
        """
        Initialize the SQLite backend.

        Args:
            db_path: Path to SQLite database file
            duplicate_deliveries: Deliver every change event twice
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.feed = ChangeFeed(duplicate_deliveries=duplicate_deliveries)
        self.conn: Optional[sqlite3.Connection] = None
        self._clock = TimestampClock()

        # Thread safety: Lock for all database operations
        self._db_lock = threading.Lock()

        self._init_database()

    def _init_database(self):
        """Initialize database schema with thread-safe connection."""
        with self._db_lock:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)

            cursor = self.conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    encryption_key TEXT
                )
            """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS participants (
                    conversation_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (conversation_id, user_id)
                )
            """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    encrypted_content TEXT NOT NULL,
                    iv TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    edited_at TEXT
                )
            """
            )

            # Create indices separately (SQLite requires separate CREATE INDEX statements)
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_participants_user ON participants (user_id)
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages (conversation_id, created_at, id)
            """
            )

            self.conn.commit()
            logger.info(f"Backend database initialized: {self.db_path}")

    async def _execute(self, sql: str, params: tuple = (), write: bool = False) -> sqlite3.Cursor:
        """Run one statement under the lock and translate sqlite errors."""
        await asyncio.sleep(0)
        if self.conn is None:
            raise BackendError(ErrorCode.E400_BACKEND_ERROR, "Backend database is closed")

        try:
            with self._db_lock:
                cursor = self.conn.cursor()
                cursor.execute(sql, params)
                if write:
                    self.conn.commit()
                return cursor
        except sqlite3.Error as e:
            logger.error(f"Backend database error: {e}", exc_info=True)
            code = ErrorCode.E402_WRITE_FAILED if write else ErrorCode.E403_READ_FAILED
            raise BackendError(code, f"Database operation failed: {e}") from e

    async def _fetch_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        cursor = await self._execute(
            "SELECT id, created_at, updated_at, encryption_key FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = cursor.fetchone()
        return ConversationRecord(*row) if row else None

    # Conversations

    async def create_conversation(
        self, conversation_id: Optional[str] = None, encryption_key: Optional[str] = None
    ) -> ConversationRecord:
        conversation_id = conversation_id or str(uuid.uuid4())
        now = self._clock.now()
        record = ConversationRecord(conversation_id, now, now, encryption_key)
        await self._execute(
            """
            INSERT INTO conversations (id, created_at, updated_at, encryption_key)
            VALUES (?, ?, ?, ?)
        """,
            (record.id, record.created_at, record.updated_at, record.encryption_key),
            write=True,
        )
        logger.debug(f"Conversation {conversation_id} created")
        self.feed.publish(ChangeEvent(TABLE_CONVERSATIONS, EVENT_INSERT, record.to_dict()))
        return record

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        return await self._fetch_conversation(conversation_id)

    async def set_encryption_key_if_unset(self, conversation_id: str, key_text: str) -> bool:
        cursor = await self._execute(
            """
            UPDATE conversations
            SET encryption_key = ?,
                updated_at = ?
            WHERE id = ?
            AND encryption_key IS NULL
        """,
            (key_text, self._clock.now(), conversation_id),
            write=True,
        )
        if cursor.rowcount > 0:
            return True

        if await self._fetch_conversation(conversation_id) is None:
            raise ConversationNotFoundError(details={"conversation_id": conversation_id})
        return False

    async def list_conversations(self, conversation_ids: List[str]) -> List[ConversationRecord]:
        if not conversation_ids:
            return []
        placeholders = ", ".join("?" for _ in conversation_ids)
        cursor = await self._execute(
            f"""
            SELECT id, created_at, updated_at, encryption_key FROM conversations
            WHERE id IN ({placeholders})
            ORDER BY updated_at DESC, id DESC
        """,
            tuple(conversation_ids),
        )
        return [ConversationRecord(*row) for row in cursor.fetchall()]

    async def delete_conversation(self, conversation_id: str) -> int:
        cursor = await self._execute(
            "DELETE FROM conversations WHERE id = ?", (conversation_id,), write=True
        )
        return cursor.rowcount

    # Participants

    async def add_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord:
        if await self._fetch_conversation(conversation_id) is None:
            raise ConversationNotFoundError(details={"conversation_id": conversation_id})

        cursor = await self._execute(
            "INSERT OR IGNORE INTO participants (conversation_id, user_id) VALUES (?, ?)",
            (conversation_id, user_id),
            write=True,
        )
        link = ParticipantRecord(conversation_id=conversation_id, user_id=user_id)
        if cursor.rowcount > 0:
            self.feed.publish(ChangeEvent(TABLE_PARTICIPANTS, EVENT_INSERT, link.to_dict()))
        return link

    async def list_participants(self, conversation_id: str) -> List[ParticipantRecord]:
        cursor = await self._execute(
            "SELECT conversation_id, user_id FROM participants WHERE conversation_id = ? "
            "ORDER BY rowid",
            (conversation_id,),
        )
        return [ParticipantRecord(*row) for row in cursor.fetchall()]

    async def list_conversation_ids_for_user(self, user_id: str) -> List[str]:
        cursor = await self._execute(
            "SELECT conversation_id FROM participants WHERE user_id = ?", (user_id,)
        )
        return [row[0] for row in cursor.fetchall()]

    async def delete_participants(self, conversation_id: str) -> int:
        cursor = await self._execute(
            "DELETE FROM participants WHERE conversation_id = ?", (conversation_id,), write=True
        )
        return cursor.rowcount

    # Messages

    async def insert_message(
        self, conversation_id: str, sender_id: str, encrypted_content: str, iv: str
    ) -> MessageRecord:
        if await self._fetch_conversation(conversation_id) is None:
            raise ConversationNotFoundError(details={"conversation_id": conversation_id})

        record = MessageRecord(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            encrypted_content=encrypted_content,
            iv=iv,
            created_at=self._clock.now(),
        )
        await self._execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.conversation_id,
                record.sender_id,
                record.encrypted_content,
                record.iv,
                record.created_at,
                record.edited_at,
            ),
            write=True,
        )
        await self._execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (record.created_at, conversation_id),
            write=True,
        )
        self.feed.publish(ChangeEvent(TABLE_MESSAGES, EVENT_INSERT, record.to_dict()))
        return record

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        cursor = await self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        )
        row = cursor.fetchone()
        return MessageRecord.from_row(row) if row else None

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        cursor = await self._execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, id ASC
        """,
            (conversation_id,),
        )
        return [MessageRecord.from_row(row) for row in cursor.fetchall()]

    async def update_message(
        self, message_id: str, sender_id: str, encrypted_content: str, iv: str, edited_at: str
    ) -> int:
        cursor = await self._execute(
            """
            UPDATE messages
            SET encrypted_content = ?,
                iv = ?,
                edited_at = ?
            WHERE id = ?
            AND sender_id = ?
        """,
            (encrypted_content, iv, edited_at, message_id, sender_id),
            write=True,
        )
        return cursor.rowcount

    async def delete_message(self, message_id: str, sender_id: str) -> int:
        cursor = await self._execute(
            "DELETE FROM messages WHERE id = ? AND sender_id = ?",
            (message_id, sender_id),
            write=True,
        )
        return cursor.rowcount

    async def delete_messages(self, conversation_id: str) -> int:
        cursor = await self._execute(
            "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,), write=True
        )
        return cursor.rowcount

    async def close(self) -> None:
        """Close database connection with thread-safe access."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Backend database closed")

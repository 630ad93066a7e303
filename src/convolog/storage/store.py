"""Conversation and message store with SQLite persistence."""

import json
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Self

from convolog.logging import get_logger
from convolog.models import Conversation, Message, block_from_record, block_to_record

logger = get_logger("store")

# Stay well below SQLite's bound parameter limit
ID_LOOKUP_CHUNK = 500

MutationListener = Callable[[str], None]

CONVERSATION_COLUMNS = (
    "id",
    "source",
    "name",
    "summary",
    "created_at",
    "updated_at",
    "imported_at",
    "message_count",
    "user_message_count",
    "assistant_message_count",
    "estimated_tokens",
    "full_text",
    "project_path",
    "git_branch",
    "working_directory",
)

MESSAGE_COLUMNS = (
    "id",
    "conversation_id",
    "sender",
    "text",
    "content_blocks",
    "created_at",
    "tool_name",
    "tool_input",
    "tool_result",
)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _conversation_row(conversation: Conversation) -> tuple[Any, ...]:
    return (
        conversation.id,
        conversation.source,
        conversation.name,
        conversation.summary,
        to_db_time(conversation.created_at),
        to_db_time(conversation.updated_at),
        to_db_time(conversation.imported_at),
        conversation.message_count,
        conversation.user_message_count,
        conversation.assistant_message_count,
        conversation.estimated_tokens,
        conversation.full_text,
        conversation.project_path,
        conversation.git_branch,
        conversation.working_directory,
    )


def _message_row(message: Message) -> tuple[Any, ...]:
    blocks = None
    if message.content_blocks is not None:
        blocks = json.dumps([block_to_record(block) for block in message.content_blocks])
    return (
        message.id,
        message.conversation_id,
        message.sender,
        message.text,
        blocks,
        to_db_time(message.created_at),
        message.tool_name,
        message.tool_input,
        message.tool_result,
    )


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        source=row["source"],
        name=row["name"],
        summary=row["summary"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        imported_at=from_db_time(row["imported_at"]),
        message_count=row["message_count"],
        user_message_count=row["user_message_count"],
        assistant_message_count=row["assistant_message_count"],
        estimated_tokens=row["estimated_tokens"],
        full_text=row["full_text"],
        project_path=row["project_path"],
        git_branch=row["git_branch"],
        working_directory=row["working_directory"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    blocks = None
    if row["content_blocks"] is not None:
        blocks = [block_from_record(record) for record in json.loads(row["content_blocks"])]
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender=row["sender"],
        text=row["text"],
        content_blocks=blocks,
        created_at=from_db_time(row["created_at"]),
        tool_name=row["tool_name"],
        tool_input=row["tool_input"],
        tool_result=row["tool_result"],
    )


class ConversationStore:
    """Manages conversations and messages in a SQLite database.

    Every write goes through `_mutation()`, which commits and then notifies
    registered mutation listeners (the search index subscribes here to
    invalidate itself).
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._listeners: list[MutationListener] = []
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                name TEXT NOT NULL,
                summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                imported_at TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                user_message_count INTEGER NOT NULL DEFAULT 0,
                assistant_message_count INTEGER NOT NULL DEFAULT 0,
                estimated_tokens INTEGER NOT NULL DEFAULT 0,
                full_text TEXT NOT NULL DEFAULT '',
                project_path TEXT,
                git_branch TEXT,
                working_directory TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_conversations_source ON conversations(source);
            CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(id) ON DELETE CASCADE,
                sender TEXT NOT NULL,
                text TEXT NOT NULL,
                content_blocks TEXT,
                created_at TEXT NOT NULL,
                tool_name TEXT,
                tool_input TEXT,
                tool_result TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);

            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self._conn.commit()

    def add_mutation_listener(self, listener: MutationListener) -> None:
        """Register a callback invoked with the operation name after each write."""
        self._listeners.append(listener)

    @contextmanager
    def _mutation(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a write, commit it, and notify listeners.

        Rolls back and re-raises if the write fails; listeners are only
        notified for committed writes.
        """
        try:
            yield self._conn
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()
        for listener in self._listeners:
            listener(operation)

    def get_conversation_ids_in(self, ids: Iterable[str]) -> set[str]:
        """Return the subset of ids that already exist in the store."""
        ids = list(dict.fromkeys(ids))
        found: set[str] = set()
        for start in range(0, len(ids), ID_LOOKUP_CHUNK):
            chunk = ids[start:start + ID_LOOKUP_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = self._conn.execute(
                f"SELECT id FROM conversations WHERE id IN ({placeholders})",
                chunk,
            )
            found.update(row["id"] for row in cursor)
        return found

    def insert_conversations(self, conversations: list[Conversation]) -> int:
        """Insert conversations, ignoring ids that already exist.

        Returns:
            Number of rows inserted
        """
        if not conversations:
            return 0
        columns = ", ".join(CONVERSATION_COLUMNS)
        placeholders = ", ".join("?" for _ in CONVERSATION_COLUMNS)
        with self._mutation("insert_conversations") as conn:
            cursor = conn.executemany(
                f"INSERT OR IGNORE INTO conversations ({columns}) VALUES ({placeholders})",
                [_conversation_row(c) for c in conversations],
            )
            inserted = cursor.rowcount
        logger.debug("Inserted conversations: count=%d", inserted)
        return inserted

    def insert_messages(self, messages: list[Message]) -> int:
        """Insert messages, ignoring ids that already exist.

        Returns:
            Number of rows inserted
        """
        if not messages:
            return 0
        columns = ", ".join(MESSAGE_COLUMNS)
        placeholders = ", ".join("?" for _ in MESSAGE_COLUMNS)
        with self._mutation("insert_messages") as conn:
            cursor = conn.executemany(
                f"INSERT OR IGNORE INTO messages ({columns}) VALUES ({placeholders})",
                [_message_row(m) for m in messages],
            )
            inserted = cursor.rowcount
        logger.debug("Inserted messages: count=%d", inserted)
        return inserted

    def upsert_conversation(self, conversation: Conversation) -> None:
        """Insert a conversation or update every field of an existing one."""
        columns = ", ".join(CONVERSATION_COLUMNS)
        placeholders = ", ".join("?" for _ in CONVERSATION_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in CONVERSATION_COLUMNS if col != "id")
        with self._mutation("upsert_conversation") as conn:
            conn.execute(
                f"""
                INSERT INTO conversations ({columns}) VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                _conversation_row(conversation),
            )

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its messages.

        Returns:
            True if a conversation was deleted
        """
        with self._mutation("delete_conversation") as conn:
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted conversation: id=%s", conversation_id)
        return deleted

    def delete_by_source(self, source: str) -> int:
        """Delete every conversation (and its messages) from one source.

        Returns:
            Number of conversations deleted
        """
        with self._mutation("delete_by_source") as conn:
            cursor = conn.execute("DELETE FROM conversations WHERE source = ?", (source,))
            deleted = cursor.rowcount
        logger.info("Deleted conversations by source: source=%s count=%d", source, deleted)
        return deleted

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        cursor = self._conn.execute(
            "SELECT * FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return _conversation_from_row(row)

    def get_all_conversations(
        self,
        limit: int | None = None,
        source: str | None = None,
    ) -> list[Conversation]:
        """List conversations, most recently updated first.

        Args:
            limit: Maximum number of conversations (None for all)
            source: Only return conversations from this source

        Returns:
            List of Conversation objects
        """
        sql = "SELECT * FROM conversations"
        params: list[Any] = []
        if source is not None:
            sql += " WHERE source = ?"
            params.append(source)
        sql += " ORDER BY updated_at DESC, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.execute(sql, params)
        return [_conversation_from_row(row) for row in cursor]

    def get_messages(self, conversation_id: str) -> list[Message]:
        """List a conversation's messages in creation order."""
        cursor = self._conn.execute(
            """
            SELECT * FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at, rowid
            """,
            (conversation_id,),
        )
        return [_message_from_row(row) for row in cursor]

    def count_conversations(self, source: str | None = None) -> int:
        if source is None:
            cursor = self._conn.execute("SELECT COUNT(*) FROM conversations")
        else:
            cursor = self._conn.execute("SELECT COUNT(*) FROM conversations WHERE source = ?", (source,))
        return cursor.fetchone()[0]

    def count_messages(self, conversation_id: str | None = None) -> int:
        if conversation_id is None:
            cursor = self._conn.execute("SELECT COUNT(*) FROM messages")
        else:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            )
        return cursor.fetchone()[0]

    def record_last_sync(self, source: str, timestamp: datetime) -> None:
        """Remember when a source was last imported."""
        self._conn.execute(
            """
            INSERT INTO metadata (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (f"lastSync.{source}", to_db_time(timestamp)),
        )
        self._conn.commit()

    def get_last_sync(self, source: str) -> datetime | None:
        cursor = self._conn.execute(
            "SELECT value FROM metadata WHERE key = ?",
            (f"lastSync.{source}",),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return from_db_time(row["value"])

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()

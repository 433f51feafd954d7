"""
Conversation storage and the background persistence writer.

Finished exchanges are written off the response path: the orchestrator
schedules a write and moves on. Writes are idempotent on
(conversation id, message ordinal), so replaying an exchange never
duplicates a message.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from chatgate.schemas import Conversation, Exchange, Message, Role


logger = logging.getLogger("chatgate.persistence")

DEFAULT_TITLE = "New Conversation"
TITLE_LENGTH = 50

_WHITESPACE = re.compile(r"\s+")


def generate_conversation_title(first_message: str) -> str:
    """
    Build a conversation title from the first user message.

    Example:
        >>> generate_conversation_title("  How do\\n  I sort a list?  ")
        'How do I sort a list?'
    """
    title = (first_message or "").strip()[:TITLE_LENGTH]
    title = _WHITESPACE.sub(" ", title).strip()
    return title or DEFAULT_TITLE


class ConversationStore(Protocol):
    """Conversation storage interface."""

    def create_conversation(self, user_id: Optional[str], title: str, model: str) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def list_conversations(self, user_id: str) -> List[Conversation]:
        ...

    def list_messages(self, conversation_id: str) -> List[Message]:
        ...

    def save_message(self, conversation_id: str, ordinal: int, message: Message) -> bool:
        ...

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        ...

    def increment_message_count(self, user_id: str, n: int = 1) -> int:
        ...

    def get_message_count(self, user_id: str) -> int:
        ...


class InMemoryConversationStore:
    """In-memory conversation store (default)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[Tuple[str, int], Message] = {}
        self._counts: Dict[str, int] = {}

    def create_conversation(self, user_id: Optional[str], title: str, model: str) -> Conversation:
        conversation = Conversation(title=title, model=model, user_id=user_id)
        with self._lock:
            self._conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        conversation.messages = self.list_messages(conversation_id)
        return conversation

    def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            owned = [c for c in self._conversations.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            keys = sorted(k for k in self._messages if k[0] == conversation_id)
            return [self._messages[k] for k in keys]

    def save_message(self, conversation_id: str, ordinal: int, message: Message) -> bool:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            key = (conversation_id, ordinal)
            if key in self._messages:
                return False
            self._messages[key] = message
            return True

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                conversation.touch(at)

    def increment_message_count(self, user_id: str, n: int = 1) -> int:
        with self._lock:
            self._counts[user_id] = self._counts.get(user_id, 0) + n
            return self._counts[user_id]

    def get_message_count(self, user_id: str) -> int:
        with self._lock:
            return self._counts.get(user_id, 0)


def _to_utc_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteConversationStore:
    """
    SQLite-backed conversation store.

    One connection is shared by the writer thread and request handlers, so
    every statement runs under a lock.
    """

    def __init__(self, db_path: str = "chatgate.db"):
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                title TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                ordinal INTEGER NOT NULL,
                id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                model TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (conversation_id, ordinal)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_counts (
                user_id TEXT PRIMARY KEY,
                count INTEGER NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id)")
        self._conn.commit()

    def _modify(self, sql: str, params: tuple) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(sql, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur.rowcount

    def _query(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def create_conversation(self, user_id: Optional[str], title: str, model: str) -> Conversation:
        conversation = Conversation(title=title, model=model, user_id=user_id)
        self._modify(
            """
            INSERT INTO conversations (id, user_id, title, model, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                conversation.id,
                user_id,
                title,
                model,
                _to_utc_text(conversation.created_at),
                _to_utc_text(conversation.updated_at),
            ),
        )
        return conversation

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            model=row["model"],
            created_at=_from_text(row["created_at"]),
            updated_at=_from_text(row["updated_at"]),
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = self._query("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if not rows:
            return None
        conversation = self._row_to_conversation(rows[0])
        conversation.messages = self.list_messages(conversation_id)
        return conversation

    def list_conversations(self, user_id: str) -> List[Conversation]:
        rows = self._query(
            "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        )
        return [self._row_to_conversation(row) for row in rows]

    def list_messages(self, conversation_id: str) -> List[Message]:
        rows = self._query(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY ordinal",
            (conversation_id,),
        )
        return [
            Message(
                id=row["id"],
                role=Role(row["role"]),
                content=row["content"],
                model=row["model"],
                created_at=_from_text(row["created_at"]),
            )
            for row in rows
        ]

    def save_message(self, conversation_id: str, ordinal: int, message: Message) -> bool:
        inserted = self._modify(
            """
            INSERT INTO messages (conversation_id, ordinal, id, role, content, model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id, ordinal) DO NOTHING
            """,
            (
                conversation_id,
                ordinal,
                message.id,
                message.role.value,
                message.content,
                message.model,
                _to_utc_text(message.created_at),
            ),
        )
        return inserted > 0

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        stamp = _to_utc_text(at)
        self._modify(
            "UPDATE conversations SET updated_at = ? WHERE id = ? AND updated_at < ?",
            (stamp, conversation_id, stamp),
        )

    def increment_message_count(self, user_id: str, n: int = 1) -> int:
        self._modify(
            """
            INSERT INTO message_counts (user_id, count) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET count = count + excluded.count
            """,
            (user_id, n),
        )
        return self.get_message_count(user_id)

    def get_message_count(self, user_id: str) -> int:
        rows = self._query("SELECT count FROM message_counts WHERE user_id = ?", (user_id,))
        return rows[0]["count"] if rows else 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# =============================================================================
# WRITER
# =============================================================================

@dataclass(frozen=True)
class PersistenceFailure:
    """A write that could not be completed."""
    exchange: Exchange
    error: str


class PersistenceWriter:
    """
    Writes finished exchanges in a background task, off the event loop.

    ``schedule`` never blocks and never raises for storage problems; failures
    are logged and the most recent ones kept on ``errors`` instead of reaching
    the caller.

    Example:
        ```python
        writer = PersistenceWriter(SQLiteConversationStore("chat.db"))
        writer.schedule(exchange)
        ...
        await writer.close()
        ```
    """

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        max_queue: int = 1000,
        max_errors: int = 100,
    ):
        self.store = store or InMemoryConversationStore()
        self.errors: Deque[PersistenceFailure] = deque(maxlen=max_errors)
        self._max_queue = max_queue
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._worker: Optional[asyncio.Task] = None

    def schedule(self, exchange: Exchange) -> None:
        """Queue an exchange for writing. Must be called from a running event loop."""
        self._ensure_worker()
        try:
            self._queue.put_nowait(exchange)
        except asyncio.QueueFull:
            logger.error("Persistence queue full; dropping exchange for %s", exchange.conversation_id)
            self.errors.append(PersistenceFailure(exchange, "queue full"))

    def write(self, exchange: Exchange) -> None:
        """Write one exchange synchronously. Safe to repeat."""
        created = self.store.save_message(exchange.conversation_id, exchange.ordinal, exchange.user_message)
        self.store.save_message(exchange.conversation_id, exchange.ordinal + 1, exchange.assistant_message)
        self.store.touch_conversation(exchange.conversation_id, exchange.assistant_message.created_at)
        if created and exchange.user_id:
            self.store.increment_message_count(exchange.user_id)

    async def drain(self) -> None:
        """Wait until every scheduled exchange has been processed."""
        await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._worker is not None and self._worker.get_loop() is not loop:
            # Queue and worker are bound to a loop that is no longer ours.
            if self._queue.qsize():
                logger.warning("Discarding %d exchanges queued on a closed event loop", self._queue.qsize())
            self._queue = asyncio.Queue(maxsize=self._max_queue)
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            exchange = await self._queue.get()
            try:
                await asyncio.to_thread(self.write, exchange)
                logger.debug(
                    "Persisted exchange %d for conversation %s", exchange.ordinal, exchange.conversation_id
                )
            except Exception as exc:
                logger.error("Failed to persist exchange for %s: %s", exchange.conversation_id, exc)
                self.errors.append(PersistenceFailure(exchange, str(exc)))
            finally:
                self._queue.task_done()

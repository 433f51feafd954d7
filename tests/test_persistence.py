"""Tests for conversation storage and the persistence writer."""

import asyncio
from datetime import datetime, timedelta, timezone
import sqlite3
import tempfile
import threading

import pytest

from chatgate.persistence import (
    DEFAULT_TITLE,
    InMemoryConversationStore,
    PersistenceWriter,
    SQLiteConversationStore,
    generate_conversation_title,
)
from chatgate.schemas import Exchange, Message, Role


def make_exchange(conversation_id, user_id="user-1", ordinal=0):
    return Exchange(
        conversation_id=conversation_id,
        user_message=Message.create(Role.USER, "What is Python?"),
        assistant_message=Message.create(Role.ASSISTANT, "A programming language.", model="DeepSeek-V3"),
        ordinal=ordinal,
        user_id=user_id,
    )


class ThreadRecordingStore(InMemoryConversationStore):
    """Remembers which threads saved messages."""

    def __init__(self):
        super().__init__()
        self.threads = set()

    def save_message(self, conversation_id, ordinal, message):
        self.threads.add(threading.get_ident())
        return super().save_message(conversation_id, ordinal, message)


class TestConversationTitle:
    """Test title generation."""

    def test_collapses_whitespace(self):
        assert generate_conversation_title("  How do\n  I sort\ta list?  ") == "How do I sort a list?"

    def test_truncates_to_fifty_characters(self):
        title = generate_conversation_title("x" * 80)
        assert title == "x" * 50

    def test_empty_uses_default(self):
        assert generate_conversation_title("   \n ") == DEFAULT_TITLE
        assert generate_conversation_title("") == DEFAULT_TITLE


class TestInMemoryStore:
    """Test the in-memory store."""

    def test_save_message_is_idempotent(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation("user-1", "Title", "DeepSeek-V3")
        message = Message.create(Role.USER, "hello")

        assert store.save_message(conversation.id, 0, message) is True
        assert store.save_message(conversation.id, 0, message) is False
        assert len(store.list_messages(conversation.id)) == 1

    def test_messages_returned_in_ordinal_order(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation("user-1", "Title", "DeepSeek-V3")
        store.save_message(conversation.id, 1, Message.create(Role.ASSISTANT, "second"))
        store.save_message(conversation.id, 0, Message.create(Role.USER, "first"))

        assert [m.content for m in store.list_messages(conversation.id)] == ["first", "second"]

    def test_unknown_conversation_raises(self):
        with pytest.raises(KeyError):
            InMemoryConversationStore().save_message("missing", 0, Message.create(Role.USER, "x"))

    def test_touch_is_monotonic(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation(None, "Title", "DeepSeek-V3")
        later = conversation.updated_at + timedelta(minutes=5)

        store.touch_conversation(conversation.id, later)
        store.touch_conversation(conversation.id, later - timedelta(minutes=10))

        assert store.get_conversation(conversation.id).updated_at == later

    def test_list_conversations_by_user(self):
        store = InMemoryConversationStore()
        store.create_conversation("user-1", "A", "DeepSeek-V3")
        store.create_conversation("user-2", "B", "DeepSeek-V3")

        assert [c.title for c in store.list_conversations("user-1")] == ["A"]


class TestSQLiteStore:
    """Test the SQLite store."""

    def test_persists_across_instances(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = f"{tmpdir}/chatgate.db"
            store = SQLiteConversationStore(db_path=db_path)
            conversation = store.create_conversation("user-1", "Python", "DeepSeek-V3")
            store.save_message(conversation.id, 0, Message.create(Role.USER, "What is Python?"))
            store.close()

            store2 = SQLiteConversationStore(db_path=db_path)
            loaded = store2.get_conversation(conversation.id)
            assert loaded.title == "Python"
            assert loaded.user_id == "user-1"
            assert [m.content for m in loaded.messages] == ["What is Python?"]
            assert loaded.messages[0].role == Role.USER
            store2.close()

    def test_save_message_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SQLiteConversationStore(db_path=f"{tmpdir}/chatgate.db")
            conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
            message = Message.create(Role.USER, "hello")

            assert store.save_message(conversation.id, 0, message) is True
            assert store.save_message(conversation.id, 0, message) is False
            assert len(store.list_messages(conversation.id)) == 1
            store.close()

    def test_touch_is_monotonic(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SQLiteConversationStore(db_path=f"{tmpdir}/chatgate.db")
            conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
            later = datetime.now(timezone.utc) + timedelta(hours=1)

            store.touch_conversation(conversation.id, later)
            store.touch_conversation(conversation.id, later - timedelta(hours=2))

            assert store.get_conversation(conversation.id).updated_at == later
            store.close()

    def test_message_counts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SQLiteConversationStore(db_path=f"{tmpdir}/chatgate.db")
            assert store.get_message_count("user-1") == 0
            store.increment_message_count("user-1")
            assert store.increment_message_count("user-1", 2) == 3
            store.close()

    def test_unknown_conversation_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SQLiteConversationStore(db_path=f"{tmpdir}/chatgate.db")
            with pytest.raises(sqlite3.IntegrityError):
                store.save_message("missing", 0, Message.create(Role.USER, "x"))
            store.close()


class TestPersistenceWriter:
    """Test background writes."""

    def test_writes_exchange_in_background(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
        writer = PersistenceWriter(store)
        exchange = make_exchange(conversation.id)

        async def _run():
            writer.schedule(exchange)
            await writer.close()

        asyncio.run(_run())

        messages = store.list_messages(conversation.id)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]
        assert store.get_message_count("user-1") == 1
        assert store.get_conversation(conversation.id).updated_at >= exchange.assistant_message.created_at

    def test_replayed_exchange_is_not_duplicated(self):
        """Writing the same exchange twice leaves one copy and one count."""
        store = InMemoryConversationStore()
        conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
        writer = PersistenceWriter(store)
        exchange = make_exchange(conversation.id)

        async def _run():
            writer.schedule(exchange)
            writer.schedule(exchange)
            await writer.drain()

        asyncio.run(_run())

        assert len(store.list_messages(conversation.id)) == 2
        assert store.get_message_count("user-1") == 1

    def test_failures_are_collected_not_raised(self):
        writer = PersistenceWriter(InMemoryConversationStore())

        async def _run():
            writer.schedule(make_exchange("missing"))
            await writer.drain()

        asyncio.run(_run())

        assert len(writer.errors) == 1
        assert writer.errors[0].exchange.conversation_id == "missing"

    def test_full_queue_drops_and_records(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
        writer = PersistenceWriter(store, max_queue=1)

        async def _run():
            writer.schedule(make_exchange(conversation.id, ordinal=0))
            writer.schedule(make_exchange(conversation.id, ordinal=2))
            await writer.drain()

        asyncio.run(_run())

        assert len(writer.errors) == 1
        assert writer.errors[0].error == "queue full"

    def test_sync_write(self):
        store = InMemoryConversationStore()
        conversation = store.create_conversation(None, "T", "DeepSeek-V3")
        PersistenceWriter(store).write(make_exchange(conversation.id, user_id=None))
        assert len(store.list_messages(conversation.id)) == 2

    def test_errors_keep_only_the_latest(self):
        writer = PersistenceWriter(InMemoryConversationStore(), max_errors=2)

        async def _run():
            for name in ["first", "second", "third"]:
                writer.schedule(make_exchange(name))
            await writer.drain()

        asyncio.run(_run())

        assert [f.exchange.conversation_id for f in writer.errors] == ["second", "third"]

    def test_store_calls_run_off_the_event_loop_thread(self):
        """A slow store must not stall other coroutines on the loop."""
        store = ThreadRecordingStore()
        conversation = store.create_conversation("user-1", "T", "DeepSeek-V3")
        writer = PersistenceWriter(store)

        async def _run():
            writer.schedule(make_exchange(conversation.id))
            await writer.drain()
            return threading.get_ident()

        loop_thread = asyncio.run(_run())

        assert store.threads
        assert loop_thread not in store.threads

"""
Tests for Thread Memory Module

Tests for Message, ThreadMemory, and ThreadManager.
"""

import threading
from datetime import datetime, timedelta

import pytest

from kbchat.errors import ThreadAccessError
from kbchat.memory import Message, ThreadManager, ThreadMemory


class TestMessage:
    """Tests for the Message dataclass."""

    def test_message_creation(self):
        """Test basic message creation."""
        msg = Message(role="user", content="Hello")
        assert msg.role == "user"
        assert msg.content == "Hello"
        assert msg.id
        assert isinstance(msg.timestamp, datetime)
        assert msg.metadata == {}

    def test_ids_are_unique(self):
        """Test every message gets its own id."""
        assert Message(role="user", content="a").id != Message(role="user", content="a").id

    def test_roundtrip(self):
        """Test to_dict/from_dict keep id and metadata."""
        msg = Message(role="assistant", content="Hi", metadata={"queries": ["q"]})
        restored = Message.from_dict(msg.to_dict())

        assert restored.id == msg.id
        assert restored.timestamp == msg.timestamp
        assert restored.metadata == {"queries": ["q"]}

    def test_from_dict_without_id(self):
        """Test a missing id is generated."""
        msg = Message.from_dict({"role": "user", "content": "x"})
        assert msg.id


class TestThreadMemory:
    """Tests for ThreadMemory."""

    @pytest.fixture
    def memory(self):
        return ThreadMemory("thread-1", max_messages=4)

    def test_add_returns_message(self, memory):
        """Test add_message returns the stored message."""
        msg = memory.add_message("user", "What plans do you offer?")
        assert memory.get_messages() == [msg]
        assert len(memory) == 1

    def test_window_is_bounded(self, memory):
        """Test old messages fall out once max_messages is reached."""
        for i in range(6):
            memory.add_message("user", f"m{i}")
        assert [m.content for m in memory.get_messages()] == ["m2", "m3", "m4", "m5"]

    def test_messages_for_llm(self, memory):
        """Test OpenAI format and limit."""
        memory.add_message("user", "q1")
        memory.add_message("assistant", "a1", metadata={"queries": ["x"]})
        memory.add_message("user", "q2")

        assert memory.get_messages_for_llm() == [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        assert memory.get_messages_for_llm(limit=1) == [{"role": "user", "content": "q2"}]
        assert memory.get_messages_for_llm(limit=0) == []

    def test_last_activity(self, memory):
        """Test last_activity follows the newest message."""
        assert memory.last_activity is None
        msg = memory.add_message("user", "hi")
        assert memory.last_activity == msg.timestamp

    def test_clear(self, memory):
        """Test clear empties the thread."""
        memory.add_message("user", "hi")
        memory.clear()
        assert len(memory) == 0

    def test_serialization(self, memory):
        """Test to_dict/from_dict."""
        memory.add_message("user", "hi")
        memory.add_message("assistant", "hello")

        restored = ThreadMemory.from_dict(memory.to_dict())

        assert restored.thread_id == "thread-1"
        assert restored.max_messages == 4
        assert [m.content for m in restored.get_messages()] == ["hi", "hello"]

    def test_concurrent_adds(self):
        """Test concurrent writers never lose messages."""
        memory = ThreadMemory("busy", max_messages=1000)

        def writer(n):
            for i in range(100):
                memory.add_message("user", f"{n}-{i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(memory) == 500


class TestThreadManager:
    """Tests for ThreadManager."""

    @pytest.fixture
    def manager(self):
        return ThreadManager(max_messages=10)

    def test_get_creates(self, manager):
        """Test threads are created on first use and reused afterwards."""
        memory = manager.get_thread("t1")
        assert manager.get_thread("t1") is memory
        assert memory.max_messages == 10
        assert manager.thread_ids() == ["t1"]

    def test_get_without_create(self, manager):
        """Test create_if_missing=False."""
        assert manager.get_thread("nope", create_if_missing=False) is None
        assert len(manager) == 0

    def test_delete(self, manager):
        """Test deleting a thread."""
        manager.get_thread("t1")
        assert manager.delete_thread("t1") is True
        assert manager.delete_thread("t1") is False

    def test_cleanup_old_threads(self, manager):
        """Test stale threads are removed and fresh empty ones kept."""
        fresh = manager.get_thread("fresh")
        fresh.add_message("user", "hi")

        stale = manager.get_thread("stale")
        old = stale.add_message("user", "long ago")
        old.timestamp = datetime.utcnow() - timedelta(hours=48)

        abandoned = manager.get_thread("abandoned")
        abandoned.created_at = datetime.utcnow() - timedelta(hours=48)

        manager.get_thread("just-joined")

        assert manager.cleanup_old_threads(max_age_hours=24) == 2
        assert sorted(manager.thread_ids()) == ["fresh", "just-joined"]

    def test_new_thread_owned_by_tenant(self, manager):
        """Test the first tenant to use a thread owns it."""
        memory = manager.get_thread("t1", tenant_id="acme")
        assert memory.tenant_id == "acme"
        assert manager.get_thread("t1", tenant_id="acme") is memory

    def test_other_tenant_rejected(self, manager):
        """Test another tenant cannot open an owned thread."""
        manager.get_thread("t1", tenant_id="acme").add_message("user", "private")

        with pytest.raises(ThreadAccessError):
            manager.get_thread("t1", tenant_id="globex")
        with pytest.raises(ThreadAccessError):
            manager.get_thread("t1", tenant_id="globex", create_if_missing=False)

    def test_unowned_thread_open(self, manager):
        """Test threads created without a tenant stay open."""
        memory = manager.get_thread("t1")
        assert manager.get_thread("t1", tenant_id="acme") is memory

    def test_owner_survives_serialization(self):
        """Test to_dict/from_dict keep the owner."""
        memory = ThreadMemory("t1", tenant_id="acme")
        assert ThreadMemory.from_dict(memory.to_dict()).tenant_id == "acme"

"""
Thread Memory Module

Server-side conversation history, one ThreadMemory per chat thread.
The server persists the user's question (its id is what `query-message`
reconciles the provisional client id with) and the committed answer, and
feeds the recent window back to the agent as history.

Design Rationale:
- Bounded deque per thread so long conversations don't grow the prompt
- Thread-safe: the websocket loop and executor threads both touch it
- ThreadManager is owned by the app, not a module global
- A thread belongs to the tenant that created it
"""

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from kbchat.errors import ThreadAccessError

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """
    A persisted thread message.

    Attributes:
        role: "user" or "assistant"
        content: The message text
        id: Stable id returned to clients
        timestamp: When the message was stored
        metadata: Extra info (queries, actions, data gaps)
    """

    role: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.utcnow(),
            metadata=data.get("metadata", {}),
        )


class ThreadMemory:
    """
    History of one chat thread.

    Example:
        memory = ThreadMemory("thread-1", max_messages=40)
        question = memory.add_message("user", "What plans do you offer?")
        memory.add_message("assistant", "We offer...")
        history = memory.get_messages_for_llm(limit=20)
    """

    def __init__(self, thread_id: str, max_messages: int = 40, tenant_id: Optional[str] = None):
        self.thread_id = thread_id
        self.tenant_id = tenant_id
        self.max_messages = max_messages
        self.created_at = datetime.utcnow()
        self._messages: deque = deque(maxlen=max_messages)
        self._lock = threading.Lock()

    def owned_by(self, tenant_id: Optional[str]) -> bool:
        """Threads without an owner are open to anyone."""
        return self.tenant_id is None or self.tenant_id == tenant_id

    def add_message(
        self,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        message = Message(role=role, content=content, metadata=metadata or {})
        with self._lock:
            self._messages.append(message)
        logger.debug(f"Added {role} message to thread {self.thread_id}")
        return message

    def get_messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def get_messages_for_llm(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        """
        Recent messages in OpenAI chat format.

        Args:
            limit: Keep only the newest N messages

        Returns:
            List of {"role", "content"} dicts, oldest first
        """
        with self._lock:
            messages = list(self._messages)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return [{"role": m.role, "content": m.content} for m in messages]

    @property
    def last_activity(self) -> Optional[datetime]:
        with self._lock:
            return self._messages[-1].timestamp if self._messages else None

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "thread_id": self.thread_id,
                "tenant_id": self.tenant_id,
                "max_messages": self.max_messages,
                "messages": [m.to_dict() for m in self._messages],
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadMemory":
        memory = cls(
            data["thread_id"],
            max_messages=data.get("max_messages", 40),
            tenant_id=data.get("tenant_id"),
        )
        for item in data.get("messages", []):
            memory._messages.append(Message.from_dict(item))
        return memory


class ThreadManager:
    """
    Registry of thread memories.

    Example:
        manager = ThreadManager()
        memory = manager.get_thread("thread-1")
        manager.cleanup_old_threads(max_age_hours=24)
    """

    def __init__(self, max_messages: int = 40):
        self._threads: Dict[str, ThreadMemory] = {}
        self._lock = threading.Lock()
        self.max_messages = max_messages

    def get_thread(
        self,
        thread_id: str,
        tenant_id: Optional[str] = None,
        create_if_missing: bool = True,
    ) -> Optional[ThreadMemory]:
        """
        Get a thread, creating it for tenant_id on first use.

        Args:
            thread_id: Thread to look up
            tenant_id: Caller's tenant; a new thread is owned by it
            create_if_missing: Return None instead of creating

        Raises:
            ThreadAccessError: The thread belongs to another tenant
        """
        with self._lock:
            memory = self._threads.get(thread_id)
            if memory is None:
                if not create_if_missing:
                    return None
                memory = ThreadMemory(thread_id, max_messages=self.max_messages, tenant_id=tenant_id)
                self._threads[thread_id] = memory
                logger.debug(f"Created thread {thread_id}")
            elif tenant_id is not None and not memory.owned_by(tenant_id):
                logger.warning(f"Tenant {tenant_id} denied access to thread {thread_id}")
                raise ThreadAccessError(thread_id)
            return memory

    def delete_thread(self, thread_id: str) -> bool:
        with self._lock:
            return self._threads.pop(thread_id, None) is not None

    def cleanup_old_threads(self, max_age_hours: float = 24) -> int:
        """
        Drop threads with no activity newer than max_age_hours.

        An empty thread's activity is its creation time.

        Returns:
            Number of threads removed
        """
        cutoff = datetime.utcnow() - timedelta(hours=max_age_hours)
        with self._lock:
            stale = [
                thread_id for thread_id, memory in self._threads.items()
                if (memory.last_activity or memory.created_at) < cutoff
            ]
            for thread_id in stale:
                del self._threads[thread_id]

        if stale:
            logger.info(f"Cleaned up {len(stale)} old threads")
        return len(stale)

    def thread_ids(self) -> List[str]:
        with self._lock:
            return list(self._threads)

    def __len__(self) -> int:
        return len(self._threads)

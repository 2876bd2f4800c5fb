"""
Chat Session Module

Client-side state machine for one streamed conversation:

    idle -> asked -> (searching | action-call)* -> answering -> idle

The session sends `ask` envelopes and consumes server envelopes
(`stage`, `llm-chunk`, `query-message`, `error`). While a turn is in
flight the user's message carries the provisional id "new-query" until
the server confirms the persisted id.

Turn events are broadcast to every session joined to the thread, so an
idle session also follows turns asked by other sessions.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kbchat.errors import StreamProtocolError

logger = logging.getLogger(__name__)

PROVISIONAL_ID = "new-query"


class AskStage(str, Enum):
    IDLE = "idle"
    ASKED = "asked"
    SEARCHING = "searching"
    ACTION_CALL = "action-call"
    ANSWERING = "answering"


@dataclass
class ChatMessage:
    """A message as shown in the conversation."""

    id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


class ChatSession:
    """
    Tracks the stage, buffered answer and message list of one conversation.

    Example:
        session = ChatSession(thread_id="t-1", on_commit=render)
        transport.send(session.ask("How do I reset my password?"))
        for envelope in transport:
            session.handle(envelope)
    """

    def __init__(
        self,
        thread_id: Optional[str] = None,
        on_commit: Optional[Callable[[ChatMessage], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.thread_id = thread_id or str(uuid.uuid4())
        self.on_commit = on_commit
        self.on_error = on_error

        self.messages: List[ChatMessage] = []
        self.stage = AskStage.IDLE
        self.search_query: Optional[str] = None
        self.action_title: Optional[str] = None
        self._buffer: List[str] = []

    @property
    def content(self) -> str:
        """Answer text streamed so far in the current turn."""
        return "".join(self._buffer)

    @property
    def is_idle(self) -> bool:
        return self.stage == AskStage.IDLE

    def _reset(self) -> None:
        self.stage = AskStage.IDLE
        self.search_query = None
        self.action_title = None
        self._buffer = []

    def ask(self, query: str) -> Optional[Dict[str, Any]]:
        """
        Start a turn.

        Args:
            query: The user's question

        Returns:
            The `ask` envelope to send, or None if the query is empty

        Raises:
            StreamProtocolError: If a turn is already in flight
        """
        query = (query or "").strip()
        if not query:
            logger.debug("Ignoring empty query")
            return None
        if not self.is_idle:
            raise StreamProtocolError(f"Cannot ask while {self.stage.value}")

        self.messages.append(ChatMessage(id=PROVISIONAL_ID, role="user", content=query))
        self.stage = AskStage.ASKED
        self._buffer = []

        return {"type": "ask", "data": {"query": query, "thread_id": self.thread_id}}

    def handle(self, envelope: Dict[str, Any]) -> None:
        """
        Apply one server envelope.

        Stage and chunk envelopes that arrive while idle belong to a turn
        asked by another session joined to the same thread; the session
        follows that turn as an observer.

        Raises:
            StreamProtocolError: For unknown types or malformed data;
                the session is reset to idle first
        """
        kind = envelope.get("type")
        data = envelope.get("data") or {}
        if not isinstance(data, dict):
            self._reset()
            raise StreamProtocolError(f"Malformed {kind} data")

        if kind == "stage":
            self._on_stage(data)
        elif kind == "llm-chunk":
            self._on_chunk(data)
        elif kind == "query-message":
            self._on_query_message(data)
        elif kind == "error":
            self._on_error(data)
        else:
            self._reset()
            raise StreamProtocolError(f"Unknown message type: {kind}")

    def _on_stage(self, data: Dict[str, Any]) -> None:
        if self.is_idle:
            logger.debug(f"Following a turn asked elsewhere on thread {self.thread_id}")
        if data.get("query"):
            self.stage = AskStage.SEARCHING
            self.search_query = data["query"]
        elif data.get("action"):
            self.stage = AskStage.ACTION_CALL
            self.action_title = data["action"]

    def _on_chunk(self, data: Dict[str, Any]) -> None:
        content = data.get("content") or ""
        if not isinstance(content, str):
            self._reset()
            raise StreamProtocolError("llm-chunk content must be a string")

        if not data.get("end"):
            self.stage = AskStage.ANSWERING
            self._buffer.append(content)
            return

        server_message = data.get("message")
        if server_message:
            message = ChatMessage(
                id=server_message.get("id") or str(uuid.uuid4()),
                role=server_message.get("role", "assistant"),
                content=server_message.get("content") or self.content,
                metadata={k: v for k, v in server_message.items()
                          if k not in ("id", "role", "content")},
            )
        else:
            message = ChatMessage(id=str(uuid.uuid4()), role="assistant", content=self.content)

        self.messages.append(message)
        self._reset()
        if self.on_commit:
            self.on_commit(message)

    def _on_query_message(self, data: Dict[str, Any]) -> None:
        for message in self.messages:
            if message.id == PROVISIONAL_ID:
                message.id = data.get("id") or message.id
                return

        # Question asked by another session on this thread
        message_id = data.get("id")
        if not message_id or any(m.id == message_id for m in self.messages):
            logger.debug("No provisional message to reconcile")
            return
        self.messages.append(ChatMessage(
            id=message_id,
            role=data.get("role", "user"),
            content=data.get("content") or "",
            metadata=data.get("metadata") or {},
        ))

    def _on_error(self, data: Dict[str, Any]) -> None:
        text = data.get("message") or "Something went wrong"
        logger.warning(f"Chat error on thread {self.thread_id}: {text}")
        # The server never stored an unreconciled question
        self.messages = [m for m in self.messages if m.id != PROVISIONAL_ID]
        self._reset()
        if self.on_error:
            self.on_error(text)

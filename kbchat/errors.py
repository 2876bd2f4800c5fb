"""
Error taxonomy for ingestion, tools and chat streaming.

Recoverable within the same run/turn:
- SourceFetchError: one connector item failed
- ToolInputRejected: a tool declined to execute

Terminal for the current unit of work (never for the process):
- BudgetExceededError: credit gate said no before the run started
- ActionExecutionError: an action's HTTP call failed
- StreamProtocolError: malformed or out-of-sequence transport message
- ThreadAccessError: a chat thread belongs to another tenant
"""

from typing import Optional


class KBChatError(Exception):
    """Base class for all engine errors."""


class SourceFetchError(KBChatError):
    """A single knowledge source item could not be fetched or shaped."""

    def __init__(self, locator: str, message: str):
        super().__init__(message)
        self.locator = locator
        self.message = message

    def __str__(self) -> str:
        return f"{self.locator}: {self.message}"


class BudgetExceededError(KBChatError):
    """The credit gate refused the run before any item was emitted."""


class EmbeddingError(KBChatError):
    """Embedding a single text unit failed."""


class ToolInputRejected(KBChatError):
    """A tool declined to run with the given input."""


class ActionExecutionError(KBChatError):
    """The downstream HTTP call of an action failed or timed out."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ThreadAccessError(KBChatError):
    """A chat thread is owned by another tenant."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread {thread_id} belongs to another tenant")
        self.thread_id = thread_id


class StreamProtocolError(KBChatError):
    """A chat transport message was malformed or arrived out of sequence."""

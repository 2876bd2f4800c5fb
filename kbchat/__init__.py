"""
kbchat - Knowledge-base Chat Engine

This package contains the engine components:
- Connectors: Web, Confluence, Notion, Linear, GitHub issues, YouTube, text
- MarkdownChunker / EmbeddingService / VectorStore: indexing building blocks
- Indexer: tenant-scoped upsert, search and result post-processing
- Tools: search_data, HTTP actions, report_data_gap
- ChatAgent: streamed tool-calling agent loop
- ChatSession: client-side streaming state machine
- IngestionRunner: knowledge group processing
- server.create_app: FastAPI server with the websocket chat endpoint
"""

from .errors import (
    KBChatError,
    SourceFetchError,
    BudgetExceededError,
    EmbeddingError,
    ToolInputRejected,
    ActionExecutionError,
    ThreadAccessError,
    StreamProtocolError,
)
from .connectors import (
    KnowledgeGroup,
    GroupStatus,
    ContentItem,
    ProgressEvent,
    ConnectorListener,
    make_connector,
)
from .chunker import MarkdownChunker, IndexedChunk
from .embeddings import EmbeddingService
from .vector_store import create_vector_store, RawHit
from .indexer import Indexer, SearchResult
from .tools import (
    ActionDefinition,
    SessionIdentity,
    QueryBudget,
    SearchTool,
    ActionTool,
    DataGapTool,
    ToolResult,
)
from .llm_service import LLMService
from .agent import ChatAgent, AgentListener, AgentTurnResult
from .chat_session import ChatSession, AskStage
from .memory import ThreadMemory, ThreadManager, Message
from .ingestion import IngestionRunner, IngestionReport, InMemoryKnowledgeStore

__all__ = [
    # Errors
    "KBChatError",
    "SourceFetchError",
    "BudgetExceededError",
    "EmbeddingError",
    "ToolInputRejected",
    "ActionExecutionError",
    "ThreadAccessError",
    "StreamProtocolError",
    # Connectors
    "KnowledgeGroup",
    "GroupStatus",
    "ContentItem",
    "ProgressEvent",
    "ConnectorListener",
    "make_connector",
    # Indexing and retrieval
    "MarkdownChunker",
    "IndexedChunk",
    "EmbeddingService",
    "create_vector_store",
    "RawHit",
    "Indexer",
    "SearchResult",
    # Tools and agent
    "ActionDefinition",
    "SessionIdentity",
    "QueryBudget",
    "SearchTool",
    "ActionTool",
    "DataGapTool",
    "ToolResult",
    "LLMService",
    "ChatAgent",
    "AgentListener",
    "AgentTurnResult",
    # Chat
    "ChatSession",
    "AskStage",
    "ThreadMemory",
    "ThreadManager",
    "Message",
    # Ingestion
    "IngestionRunner",
    "IngestionReport",
    "InMemoryKnowledgeStore",
]

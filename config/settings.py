"""
Configuration settings for the knowledge-base chat engine.

This module handles all configuration management using environment variables.
No hardcoded credentials - everything is configurable via .env file.
"""

import os
from dataclasses import dataclass, field
from typing import Literal, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding models."""

    provider: Literal["local", "openai"] = "local"
    local_model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = None

    @property
    def dimension(self) -> int:
        """Return embedding dimension based on selected model."""
        if self.provider == "local":
            model_dimensions = {
                "all-MiniLM-L6-v2": 384,
                "all-mpnet-base-v2": 768,
                "paraphrase-MiniLM-L6-v2": 384,
            }
            return model_dimensions.get(self.local_model, 384)
        else:
            model_dimensions = {
                "text-embedding-3-small": 1536,
                "text-embedding-3-large": 3072,
                "text-embedding-ada-002": 1536,
            }
            return model_dimensions.get(self.openai_model, 1536)


@dataclass
class LLMConfig:
    """Configuration for the tool-calling chat model."""

    provider: Literal["openai", "ollama"] = "openai"

    # OpenAI (or any OpenAI-compatible endpoint via base_url)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None

    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"

    temperature: float = 0.3
    max_tool_rounds: int = 8  # Agent loop stops calling tools after this


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""

    provider: Literal["faiss", "mongodb"] = "faiss"

    # MongoDB settings
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "kbchat"
    mongodb_collection: str = "chunks"
    mongodb_vector_index: str = "vector_index"

    # FAISS settings (one index file per tenant inside this directory)
    faiss_index_dir: Optional[str] = "./data/faiss"


@dataclass
class ChunkingConfig:
    """Configuration for markdown chunking."""

    chunk_size: int = 7680  # Characters per chunk
    chunk_overlap: int = 200


@dataclass
class RetrievalConfig:
    """Configuration for retrieval and the search tool."""

    top_k: int = 20  # Raw candidates fetched per search
    top_n: int = 4  # Results kept after processing
    min_score: Optional[float] = None
    max_queries: int = 5  # Searches allowed per agent turn
    min_query_chars: int = 5
    min_query_words: int = 4


@dataclass
class ConnectorConfig:
    """Configuration for knowledge source connectors."""

    http_timeout: float = 30.0
    user_agent: str = "kbchat/0.1 (+knowledge-base ingestion)"
    web_page_limit: int = 300
    rate_limit_wait: float = 0.0  # Seconds between paginated API requests
    github_token: Optional[str] = None
    github_max_issues: int = 100
    scrapecreators_api_key: Optional[str] = None
    max_workers: int = 4  # Parallel embed/upsert jobs per ingestion run


@dataclass
class ChatConfig:
    """Configuration for chat sessions and the websocket transport."""

    max_question_length: int = 3000
    heartbeat_seconds: float = 30.0
    history_messages: int = 20
    thread_max_age_hours: float = 24.0
    thread_cleanup_seconds: float = 3600.0


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.embedding.provider)
        print(settings.retrieval.top_k)
    """

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    connectors: ConnectorConfig = field(default_factory=ConnectorConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "data")

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        embedding = EmbeddingConfig(
            provider=os.getenv("EMBEDDING_PROVIDER", "local"),  # type: ignore
            local_model=os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
        )

        llm = LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "openai"),  # type: ignore
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini"),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.1"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.3")),
            max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", "8")),
        )

        vector_store = VectorStoreConfig(
            provider=os.getenv("VECTOR_STORE_PROVIDER", "faiss"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "kbchat"),
            mongodb_collection=os.getenv("MONGODB_COLLECTION", "chunks"),
            mongodb_vector_index=os.getenv("MONGODB_VECTOR_INDEX", "vector_index"),
            faiss_index_dir=os.getenv("FAISS_INDEX_DIR", "./data/faiss") or None,
        )

        chunking = ChunkingConfig(
            chunk_size=int(os.getenv("CHUNK_SIZE", "7680")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
        )

        retrieval = RetrievalConfig(
            top_k=int(os.getenv("SEARCH_TOP_K", "20")),
            top_n=int(os.getenv("SEARCH_TOP_N", "4")),
            min_score=_optional_float(os.getenv("SEARCH_MIN_SCORE")),
            max_queries=int(os.getenv("MAX_SEARCH_QUERIES", "5")),
            min_query_chars=int(os.getenv("MIN_QUERY_CHARS", "5")),
            min_query_words=int(os.getenv("MIN_QUERY_WORDS", "4")),
        )

        connectors = ConnectorConfig(
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
            user_agent=os.getenv("CONNECTOR_USER_AGENT", "kbchat/0.1 (+knowledge-base ingestion)"),
            web_page_limit=int(os.getenv("WEB_PAGE_LIMIT", "300")),
            rate_limit_wait=float(os.getenv("RATE_LIMIT_WAIT", "0")),
            github_token=os.getenv("GITHUB_TOKEN"),
            github_max_issues=int(os.getenv("GITHUB_MAX_ISSUES", "100")),
            scrapecreators_api_key=os.getenv("SCRAPECREATORS_API_KEY"),
            max_workers=int(os.getenv("INGEST_MAX_WORKERS", "4")),
        )

        chat = ChatConfig(
            max_question_length=int(os.getenv("MAX_QUESTION_LENGTH", "3000")),
            heartbeat_seconds=float(os.getenv("HEARTBEAT_SECONDS", "30")),
            history_messages=int(os.getenv("HISTORY_MESSAGES", "20")),
            thread_max_age_hours=float(os.getenv("THREAD_MAX_AGE_HOURS", "24")),
            thread_cleanup_seconds=float(os.getenv("THREAD_CLEANUP_SECONDS", "3600")),
        )

        return cls(
            embedding=embedding,
            llm=llm,
            vector_store=vector_store,
            chunking=chunking,
            retrieval=retrieval,
            connectors=connectors,
            chat=chat,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings

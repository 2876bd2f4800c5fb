"""
Embedding Service Module

Turns chunk and query text into vectors, supporting:
- Local: Sentence Transformers (all-MiniLM-L6-v2) - no API key needed
- Cloud: OpenAI (text-embedding-3-small) - requires API key

Design Rationale:
- Abstract interface so the indexer never knows which provider is used
- Empty text is rejected before reaching a provider
- A provider failure is raised as EmbeddingError for that text only;
  callers decide whether the unit of work is lost, never the whole run

Embedding Dimensions:
- all-MiniLM-L6-v2: 384 dimensions
- all-mpnet-base-v2: 768 dimensions
- text-embedding-3-small: 1536 dimensions
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from config.settings import get_settings, EmbeddingConfig
from kbchat.errors import EmbeddingError

logger = logging.getLogger(__name__)


def _login_huggingface() -> None:
    """Authenticate model downloads when HF_TOKEN is set."""
    if hf_token := os.getenv("HF_TOKEN"):
        from huggingface_hub import login
        login(token=hf_token)


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    All embedding providers must implement:
    - embed_text: Embed a single text string
    - embed_batch: Embed multiple texts efficiently
    - dimension: Return the embedding dimension
    """

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding for a single text."""
        pass

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts, preserving order."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the name of the embedding model."""
        pass


class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """
    Local embedding provider using Sentence Transformers.

    The model is loaded lazily on first use and normalised embeddings are
    returned, so inner product equals cosine similarity.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self._model_name = model_name
        self._model = None
        self._dimension = None

        logger.info(f"Initializing LocalEmbeddingProvider with model: {model_name}")

    def _load_model(self):
        """Lazy load the model (only when first needed)."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install sentence-transformers"
                )

            _login_huggingface()
            logger.info(f"Loading sentence-transformers model: {self._model_name}")
            self._model = SentenceTransformer(self._model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Model loaded. Embedding dimension: {self._dimension}")

    def embed_text(self, text: str) -> List[float]:
        self._load_model()
        embedding = self._model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return embedding.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self._load_model()
        if not texts:
            return []

        logger.debug(f"Embedding batch of {len(texts)} texts")
        embeddings = self._model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
            batch_size=32,
        )
        return embeddings.tolist()

    @property
    def dimension(self) -> int:
        self._load_model()
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """
    OpenAI embedding provider using the embeddings API.

    Models:
    - text-embedding-3-small: 1536 dims (cheaper)
    - text-embedding-3-large: 3072 dims (better quality)
    - text-embedding-ada-002: 1536 dims (legacy)
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    # OpenAI accepts up to 2048 inputs per request
    BATCH_SIZE = 100

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
    ):
        self._model_name = model_name
        self._api_key = api_key
        self._client = None

        if model_name not in self.MODEL_DIMENSIONS:
            logger.warning(f"Unknown model {model_name}, assuming 1536 dimensions")

        logger.info(f"Initializing OpenAIEmbeddingProvider with model: {model_name}")

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError(
                    "openai package is required for OpenAI embeddings. "
                    "Install with: pip install openai"
                )

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment "
                    "variable or pass api_key parameter."
                )

            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI embeddings client initialized")

        return self._client

    def embed_text(self, text: str) -> List[float]:
        response = self._get_client().embeddings.create(input=text, model=self._model_name)
        return response.data[0].embedding

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        client = self._get_client()
        logger.debug(f"Embedding batch of {len(texts)} texts via OpenAI")

        all_embeddings = []
        for i in range(0, len(texts), self.BATCH_SIZE):
            batch = texts[i:i + self.BATCH_SIZE]
            response = client.embeddings.create(input=batch, model=self._model_name)
            sorted_data = sorted(response.data, key=lambda x: x.index)
            all_embeddings.extend(item.embedding for item in sorted_data)

        return all_embeddings

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        return self._model_name


class EmbeddingService:
    """
    Unified embedding interface used by the indexer.

    Example:
        service = EmbeddingService()  # Uses config
        vector = service.embed("How do I reset my password?")

        # Or specify provider explicitly
        service = EmbeddingService(provider="openai")
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        config: Optional[EmbeddingConfig] = None,
        backend: Optional[BaseEmbeddingProvider] = None,
    ):
        """
        Initialize the embedding service.

        Args:
            provider: "local" or "openai" (default from config)
            config: Optional EmbeddingConfig instance
            backend: Ready-made provider instance (overrides provider)
        """
        self.config = config or get_settings().embedding
        self._provider_name = provider or self.config.provider

        if backend is not None:
            self._provider = backend
        elif self._provider_name == "local":
            self._provider = LocalEmbeddingProvider(model_name=self.config.local_model)
        elif self._provider_name == "openai":
            self._provider = OpenAIEmbeddingProvider(
                model_name=self.config.openai_model,
                api_key=self.config.openai_api_key,
            )
        else:
            raise ValueError(f"Unknown embedding provider: {self._provider_name}")

        logger.info(f"EmbeddingService initialized with {self._provider_name} provider")

    def embed(self, text: str) -> List[float]:
        """
        Embed one text unit.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingError: If the text is empty or the provider fails
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        try:
            return self._provider.embed_text(text)
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed several non-empty texts, preserving order.

        Raises:
            EmbeddingError: If any text is empty or the provider fails
        """
        if any(not t or not t.strip() for t in texts):
            raise EmbeddingError("Cannot embed empty text")
        if not texts:
            return []

        try:
            return self._provider.embed_batch(texts)
        except Exception as e:
            raise EmbeddingError(f"Batch embedding failed: {e}") from e

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        return self._provider_name


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns:
        Similarity score between -1 and 1 (1 = identical), 0 for zero vectors
    """
    arr1 = np.array(vec1)
    arr2 = np.array(vec2)

    norm1 = np.linalg.norm(arr1)
    norm2 = np.linalg.norm(arr2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(arr1, arr2) / (norm1 * norm2))

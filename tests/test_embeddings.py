"""
Tests for EmbeddingService module.

Run with: pytest tests/test_embeddings.py -v

Note: Tests marked slow need sentence-transformers and a model download.
"""

from unittest.mock import MagicMock, Mock

import pytest

from config.settings import EmbeddingConfig
from kbchat.embeddings import (
    BaseEmbeddingProvider,
    EmbeddingService,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
)
from kbchat.errors import EmbeddingError


class FakeProvider(BaseEmbeddingProvider):
    """Deterministic provider: vector built from text length and vowels."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []

    def _vector(self, text):
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("provider exploded")
        return [float(len(text)), float(sum(text.count(v) for v in "aeiou")), 1.0]

    def embed_text(self, text):
        self.calls.append(text)
        return self._vector(text)

    def embed_batch(self, texts):
        self.calls.extend(texts)
        return [self._vector(t) for t in texts]

    @property
    def dimension(self):
        return 3

    @property
    def model_name(self):
        return "fake"


class TestCosineSimilarity:
    """Tests for cosine similarity function."""

    def test_identical_vectors(self):
        vec = [1.0, 2.0, 3.0]
        assert abs(cosine_similarity(vec, vec) - 1.0) < 0.001

    def test_orthogonal_vectors(self):
        assert abs(cosine_similarity([1.0, 0.0], [0.0, 1.0])) < 0.001

    def test_opposite_vectors(self):
        assert abs(cosine_similarity([1.0, 2.0], [-1.0, -2.0]) + 1.0) < 0.001

    def test_zero_vector(self):
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0


class TestEmbeddingService:
    """Tests for EmbeddingService with an injected backend."""

    @pytest.fixture
    def provider(self):
        return FakeProvider(fail_on="poison")

    @pytest.fixture
    def service(self, provider):
        return EmbeddingService(config=EmbeddingConfig(), backend=provider)

    def test_embed(self, service):
        assert service.embed("hello") == [5.0, 2.0, 1.0]

    def test_empty_text_rejected(self, service, provider):
        """Empty text never reaches the provider."""
        with pytest.raises(EmbeddingError):
            service.embed("")
        with pytest.raises(EmbeddingError):
            service.embed("   ")
        assert provider.calls == []

    def test_provider_failure_is_embedding_error(self, service):
        with pytest.raises(EmbeddingError, match="provider exploded"):
            service.embed("poison pill")

    def test_failure_is_scoped_to_the_unit(self, service):
        """A failing text does not poison later calls."""
        with pytest.raises(EmbeddingError):
            service.embed("poison")
        assert service.embed("fine") == [4.0, 2.0, 1.0]

    def test_batch_preserves_order(self, service):
        vectors = service.embed_batch(["a", "bbb", "cc"])
        assert [v[0] for v in vectors] == [1.0, 3.0, 2.0]

    def test_batch_rejects_empty_member(self, service):
        with pytest.raises(EmbeddingError):
            service.embed_batch(["ok", ""])

    def test_empty_batch(self, service):
        assert service.embed_batch([]) == []

    def test_properties(self, service):
        assert service.dimension == 3
        assert service.model_name == "fake"
        assert service.provider_name == "local"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            EmbeddingService(provider="word2vec", config=EmbeddingConfig())


class TestOpenAIEmbeddingProvider:
    """Tests for the OpenAI provider with a mocked client."""

    def test_batches_and_orders_by_index(self):
        provider = OpenAIEmbeddingProvider(api_key="sk-test")
        provider.BATCH_SIZE = 2

        def create(input, model):
            data = [Mock(index=i, embedding=[float(len(t))]) for i, t in enumerate(input)]
            return Mock(data=list(reversed(data)))

        client = MagicMock()
        client.embeddings.create.side_effect = create
        provider._client = client

        vectors = provider.embed_batch(["a", "bb", "ccc"])

        assert vectors == [[1.0], [2.0], [3.0]]
        assert client.embeddings.create.call_count == 2

    def test_dimension(self):
        assert OpenAIEmbeddingProvider(model_name="text-embedding-3-large").dimension == 3072


class TestLocalEmbeddingProvider:
    """Tests for local embedding provider."""

    @pytest.fixture
    def provider(self):
        return LocalEmbeddingProvider(model_name="all-MiniLM-L6-v2")

    @pytest.mark.slow
    def test_embed_text(self, provider):
        embedding = provider.embed_text("Hello, world!")
        assert len(embedding) == 384
        assert abs(sum(x * x for x in embedding) - 1.0) < 0.01  # normalised

    @pytest.mark.slow
    def test_similar_texts_have_high_similarity(self, provider):
        emb1 = provider.embed_text("How do I reset my password?")
        emb2 = provider.embed_text("Steps to change a forgotten password")
        emb3 = provider.embed_text("The weather is sunny today.")
        assert cosine_similarity(emb1, emb2) > cosine_similarity(emb1, emb3)

"""
Indexer Module

The indexing and retrieval engine used by ingestion and the search tool.
It wraps chunking, embedding and the tenant-scoped vector store, and
post-processes raw hits into ranked, deduplicated SearchResults.

Design Rationale:
- Tenant id is threaded through every call; the vector store enforces it
- process() sees the full candidate set; min_score prunes afterwards
- Several chunks of the same source collapse into a single result so
  the agent gets more distinct sources per search
- fetch_id is a short citation handle the model can quote back

Usage:
    indexer = Indexer()
    indexer.index_item("acme", ContentItem(locator=url, title=t, text=md))
    hits = indexer.search_text("acme", "how do refunds work", top_k=20)
    results = indexer.process("how do refunds work", hits, min_score=0.3)
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config.settings import get_settings, RetrievalConfig
from kbchat.chunker import IndexedChunk, MarkdownChunker
from kbchat.connectors import ContentItem
from kbchat.embeddings import EmbeddingService
from kbchat.vector_store import BaseVectorStore, RawHit, create_vector_store

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """
    A processed retrieval result.

    Attributes:
        locator: Source URL/ID
        content: Text of the source's matching chunks
        score: Normalised relevance in [0, 1]
        fetch_id: 5 digit citation id, unique within one result set
        title: Source title when known
    """

    locator: str
    content: str
    score: float
    fetch_id: str
    title: Optional[str] = None

    def to_llm_dict(self) -> Dict[str, str]:
        """Shape exposed to the language model."""
        return {
            "url": self.locator,
            "content": self.content,
            "fetchUniqueId": self.fetch_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locator": self.locator,
            "content": self.content,
            "score": self.score,
            "fetch_id": self.fetch_id,
            "title": self.title,
        }


def normalize_score(cosine: float) -> float:
    """Map a cosine similarity into [0, 1]."""
    return max(0.0, min(1.0, float(cosine)))


def make_fetch_id(locator: str, taken: set) -> str:
    """Deterministic 5 digit id for a locator, bumped on collision."""
    value = int(hashlib.sha1(locator.encode()).hexdigest(), 16) % 90000 + 10000
    while str(value) in taken:
        value = 10000 if value >= 99999 else value + 1
    return str(value)


class Indexer:
    """
    Embeds, stores and retrieves tenant-scoped knowledge.

    Example:
        indexer = Indexer(embedding_service=service, vector_store=store)
        vector = indexer.embed("password reset")
        indexer.upsert("acme", chunks)
        hits = indexer.search("acme", vector, top_k=20)
    """

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        vector_store: Optional[BaseVectorStore] = None,
        chunker: Optional[MarkdownChunker] = None,
        config: Optional[RetrievalConfig] = None,
    ):
        """
        Initialize the indexer.

        Args:
            embedding_service: EmbeddingService (default from config)
            vector_store: Vector store backend (default from config)
            chunker: MarkdownChunker (default from config)
            config: Optional RetrievalConfig
        """
        self.config = config or get_settings().retrieval
        self.embedding_service = embedding_service or EmbeddingService()
        self.vector_store = vector_store or create_vector_store(self.embedding_service.dimension)
        self.chunker = chunker or MarkdownChunker()

        logger.info("Indexer initialized")

    def embed(self, text: str) -> List[float]:
        """Embed one text unit (raises EmbeddingError on failure)."""
        return self.embedding_service.embed(text)

    def upsert(self, tenant_id: str, chunks: List[IndexedChunk]) -> int:
        """Embed chunks lacking a vector and write them to the tenant."""
        pending = [c for c in chunks if c.embedding is None]
        if pending:
            vectors = self.embedding_service.embed_batch([c.text for c in pending])
            for chunk, vector in zip(pending, vectors):
                chunk.embedding = vector
        return self.vector_store.upsert(tenant_id, chunks)

    def search(self, tenant_id: str, query_vector: List[float], top_k: Optional[int] = None) -> List[RawHit]:
        """Raw nearest-neighbour hits from one tenant."""
        return self.vector_store.search(tenant_id, query_vector, top_k or self.config.top_k)

    def search_text(self, tenant_id: str, query: str, top_k: Optional[int] = None) -> List[RawHit]:
        """Embed a query and search one tenant."""
        return self.search(tenant_id, self.embed(query), top_k)

    def process(
        self,
        query: str,
        raw_hits: List[RawHit],
        min_score: Optional[float] = None,
        top_n: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Rank, deduplicate and score raw hits.

        Chunks sharing a locator collapse into one result carrying the best
        score and the chunk texts in score order. Scores are normalised to
        [0, 1] and only the best top_n results are kept. min_score is applied
        last, on the processed results.

        Args:
            query: The query the hits answer (used for logging)
            raw_hits: Hits from search()
            min_score: Optional threshold applied after processing
            top_n: Results to keep (default from config)

        Returns:
            List of SearchResult sorted by score descending
        """
        top_n = top_n or self.config.top_n
        ordered = sorted(raw_hits, key=lambda h: h.score, reverse=True)

        grouped: Dict[str, List[RawHit]] = {}
        for hit in ordered:
            grouped.setdefault(hit.chunk.locator, []).append(hit)

        results: List[SearchResult] = []
        taken: set = set()
        for locator, hits in list(grouped.items())[:top_n]:
            seen_texts = []
            for hit in hits:
                if hit.chunk.text not in seen_texts:
                    seen_texts.append(hit.chunk.text)

            fetch_id = make_fetch_id(locator, taken)
            taken.add(fetch_id)
            results.append(SearchResult(
                locator=locator,
                content="\n\n".join(seen_texts),
                score=normalize_score(hits[0].score),
                fetch_id=fetch_id,
                title=hits[0].chunk.metadata.get("title"),
            ))

        if min_score is not None:
            results = [r for r in results if r.score >= min_score]

        logger.debug(
            f"Processed {len(raw_hits)} hits into {len(results)} results for query '{query[:50]}'"
        )
        return results

    def index_item(
        self,
        tenant_id: str,
        item: ContentItem,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Chunk, embed and store one content item, replacing its old chunks.

        Returns:
            Number of chunks written

        Raises:
            EmbeddingError: If embedding this item failed
        """
        chunks = self.chunker.split_item(
            scrape_id=tenant_id,
            locator=item.locator,
            text=item.text,
            title=item.title,
            metadata=metadata,
        )
        if not chunks:
            logger.warning(f"No chunks produced for {item.locator}")
            return 0

        # Embed before deleting so a failed item keeps its previous chunks
        vectors = self.embedding_service.embed_batch([c.text for c in chunks])
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector

        self.vector_store.delete_locators(tenant_id, [item.locator])
        return self.vector_store.upsert(tenant_id, chunks)

    def delete_tenant(self, tenant_id: str) -> int:
        return self.vector_store.delete_tenant(tenant_id)

    def delete_locators(self, tenant_id: str, locators: List[str]) -> int:
        return self.vector_store.delete_locators(tenant_id, locators)

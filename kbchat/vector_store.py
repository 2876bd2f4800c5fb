"""
Vector Store Module

Tenant-scoped storage and similarity search for IndexedChunks.
Supports two backends:
- FAISS: Local, one index partition per tenant
- MongoDB Atlas: Production, $vectorSearch with a scrape_id filter

Design Rationale:
- Every read and write takes the tenant id; there is no unscoped search
- Isolation is enforced where the query runs (separate FAISS partition,
  Atlas pre-filter), never by filtering results afterwards
- Upserts replace chunks with the same id inside the tenant
- Writes are refused for chunks that belong to another tenant

Schema (stored per chunk):
- _id / id: "{scrape_id}/{locator}#{chunk_index}"
- scrape_id: Tenant key
- locator: Source URL/ID
- text, chunk_index, metadata
- embedding: Vector representation
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Dict, Any

import numpy as np

from config.settings import get_settings, VectorStoreConfig
from kbchat.chunker import IndexedChunk

logger = logging.getLogger(__name__)


@dataclass
class RawHit:
    """A backend search hit before post-processing."""

    chunk: IndexedChunk
    score: float

    def __repr__(self) -> str:
        return f"RawHit(locator='{self.chunk.locator}', score={self.score:.4f})"


def _check_tenant(tenant_id: str, chunks: List[IndexedChunk]) -> None:
    if not tenant_id:
        raise ValueError("tenant_id is required")
    foreign = [c.id for c in chunks if c.scrape_id != tenant_id]
    if foreign:
        raise ValueError(
            f"Refusing to write {len(foreign)} chunks of another tenant into {tenant_id}"
        )


class BaseVectorStore(ABC):
    """
    Abstract base class for tenant-scoped vector stores.

    All implementations must provide:
    - upsert: Add or replace chunks of one tenant
    - search: Find similar chunks of one tenant
    - delete / delete_locators / delete_tenant: Remove chunks
    - count: Number of chunks of one tenant
    """

    @abstractmethod
    def upsert(self, tenant_id: str, chunks: List[IndexedChunk]) -> int:
        """
        Add or replace chunks (must carry embeddings and tenant_id).

        Returns:
            Number of chunks written
        """
        pass

    @abstractmethod
    def search(self, tenant_id: str, query_embedding: List[float], top_k: int = 20) -> List[RawHit]:
        """
        Search one tenant's chunks.

        Returns:
            Raw hits sorted by score descending
        """
        pass

    @abstractmethod
    def delete(self, tenant_id: str, chunk_ids: List[str]) -> int:
        pass

    @abstractmethod
    def delete_locators(self, tenant_id: str, locators: List[str]) -> int:
        pass

    @abstractmethod
    def delete_tenant(self, tenant_id: str) -> int:
        pass

    @abstractmethod
    def count(self, tenant_id: str) -> int:
        pass


class _TenantPartition:
    """One tenant's FAISS index plus the chunks it points to."""

    def __init__(self, dimension: int):
        import faiss

        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self.chunks: Dict[int, IndexedChunk] = {}
        self.id_to_key: Dict[str, int] = {}
        self.next_key = 0


class FAISSVectorStore(BaseVectorStore):
    """
    FAISS-based vector store with one partition per tenant.

    A search only ever touches the requested tenant's partition. When an
    index directory is configured each partition is persisted to its own
    pair of files named after a hash of the tenant id.
    """

    def __init__(self, dimension: int, index_dir: Optional[str] = None):
        """
        Initialize FAISS vector store.

        Args:
            dimension: Embedding dimension (must match your model)
            index_dir: Directory to persist partitions in (optional)
        """
        try:
            import faiss  # noqa: F401
        except ImportError:
            raise ImportError(
                "faiss-cpu is required for FAISS vector store. "
                "Install with: pip install faiss-cpu"
            )

        self.dimension = dimension
        self.index_dir = Path(index_dir) if index_dir else None
        self._partitions: Dict[str, _TenantPartition] = {}
        self._lock = threading.Lock()

        logger.info(f"FAISSVectorStore initialized: dimension={dimension}, index_dir={index_dir}")

    def _normalize(self, vectors: np.ndarray) -> np.ndarray:
        """Normalize vectors for cosine similarity."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1
        return vectors / norms

    def _paths(self, tenant_id: str):
        name = hashlib.sha1(tenant_id.encode()).hexdigest()[:16]
        return self.index_dir / f"{name}.faiss", self.index_dir / f"{name}.json"

    def _partition(self, tenant_id: str, create: bool = True) -> Optional[_TenantPartition]:
        partition = self._partitions.get(tenant_id)
        if partition is None:
            partition = self._load(tenant_id)
            if partition is None and create:
                partition = _TenantPartition(self.dimension)
            if partition is not None:
                self._partitions[tenant_id] = partition
        return partition

    def _remove_keys(self, partition: _TenantPartition, keys: List[int]) -> None:
        if not keys:
            return
        partition.index.remove_ids(np.array(keys, dtype=np.int64))
        for key in keys:
            chunk = partition.chunks.pop(key)
            partition.id_to_key.pop(chunk.id, None)

    def upsert(self, tenant_id: str, chunks: List[IndexedChunk]) -> int:
        _check_tenant(tenant_id, chunks)
        valid = [c for c in chunks if c.embedding is not None]
        if len(valid) < len(chunks):
            logger.warning(f"Skipping {len(chunks) - len(valid)} chunks without embeddings")
        if not valid:
            return 0

        vectors = self._normalize(np.array([c.embedding for c in valid], dtype=np.float32))

        with self._lock:
            partition = self._partition(tenant_id)
            existing = [partition.id_to_key[c.id] for c in valid if c.id in partition.id_to_key]
            self._remove_keys(partition, existing)

            keys = []
            for chunk in valid:
                key = partition.next_key
                partition.next_key += 1
                partition.chunks[key] = chunk
                partition.id_to_key[chunk.id] = key
                keys.append(key)

            partition.index.add_with_ids(vectors, np.array(keys, dtype=np.int64))
            self._save(tenant_id, partition)

        logger.debug(f"Upserted {len(valid)} chunks for tenant {tenant_id}")
        return len(valid)

    def search(self, tenant_id: str, query_embedding: List[float], top_k: int = 20) -> List[RawHit]:
        with self._lock:
            partition = self._partition(tenant_id, create=False)
            if partition is None or partition.index.ntotal == 0:
                return []

            query = self._normalize(np.array([query_embedding], dtype=np.float32))
            k = min(top_k, partition.index.ntotal)
            scores, keys = partition.index.search(query, k)

            hits = []
            for score, key in zip(scores[0], keys[0]):
                if key < 0:  # FAISS returns -1 for not found
                    continue
                chunk = partition.chunks.get(int(key))
                if chunk is not None:
                    hits.append(RawHit(chunk=chunk, score=float(score)))

        logger.debug(f"Search for tenant {tenant_id} returned {len(hits)} hits")
        return hits

    def delete(self, tenant_id: str, chunk_ids: List[str]) -> int:
        with self._lock:
            partition = self._partition(tenant_id, create=False)
            if partition is None:
                return 0
            keys = [partition.id_to_key[cid] for cid in chunk_ids if cid in partition.id_to_key]
            self._remove_keys(partition, keys)
            self._save(tenant_id, partition)
        return len(keys)

    def delete_locators(self, tenant_id: str, locators: List[str]) -> int:
        wanted = set(locators)
        with self._lock:
            partition = self._partition(tenant_id, create=False)
            if partition is None:
                return 0
            keys = [key for key, chunk in partition.chunks.items() if chunk.locator in wanted]
            self._remove_keys(partition, keys)
            self._save(tenant_id, partition)
        return len(keys)

    def delete_tenant(self, tenant_id: str) -> int:
        with self._lock:
            partition = self._partition(tenant_id, create=False)
            self._partitions.pop(tenant_id, None)
            if self.index_dir:
                for path in self._paths(tenant_id):
                    path.unlink(missing_ok=True)
        removed = len(partition.chunks) if partition else 0
        logger.info(f"Deleted {removed} chunks of tenant {tenant_id}")
        return removed

    def count(self, tenant_id: str) -> int:
        with self._lock:
            partition = self._partition(tenant_id, create=False)
            return len(partition.chunks) if partition else 0

    def _save(self, tenant_id: str, partition: _TenantPartition) -> None:
        """Save one partition to disk (caller holds the lock)."""
        import faiss

        if not self.index_dir:
            return

        self.index_dir.mkdir(parents=True, exist_ok=True)
        index_path, metadata_path = self._paths(tenant_id)
        faiss.write_index(partition.index, str(index_path))

        metadata = {
            "tenant_id": tenant_id,
            "chunks": {str(k): v.to_dict() for k, v in partition.chunks.items()},
            "next_key": partition.next_key,
            "dimension": self.dimension,
        }
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f)

    def _load(self, tenant_id: str) -> Optional[_TenantPartition]:
        """Load one partition from disk if it was persisted."""
        import faiss

        if not self.index_dir:
            return None
        index_path, metadata_path = self._paths(tenant_id)
        if not index_path.exists() or not metadata_path.exists():
            return None

        with open(metadata_path, "r", encoding="utf-8") as f:
            metadata = json.load(f)
        if metadata.get("tenant_id") != tenant_id:
            raise ValueError(f"Index file {index_path} does not belong to tenant {tenant_id}")

        partition = _TenantPartition(self.dimension)
        partition.index = faiss.read_index(str(index_path))
        partition.chunks = {int(k): IndexedChunk.from_dict(v) for k, v in metadata["chunks"].items()}
        partition.id_to_key = {chunk.id: key for key, chunk in partition.chunks.items()}
        partition.next_key = metadata["next_key"]

        logger.info(f"Loaded FAISS partition for {tenant_id} with {partition.index.ntotal} vectors")
        return partition


class MongoDBVectorStore(BaseVectorStore):
    """
    MongoDB Atlas Vector Store for production use.

    Requires an Atlas Vector Search index on the collection with
    `embedding` as the vector path and `scrape_id` declared as a filter
    field (see create_vector_index).
    """

    def __init__(
        self,
        dimension: int,
        uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        vector_index: Optional[str] = None,
    ):
        """
        Initialize MongoDB Vector Store.

        Args:
            dimension: Embedding dimension
            uri: MongoDB connection URI (or from env)
            database: Database name
            collection: Collection name
            vector_index: Name of the vector search index
        """
        config = get_settings().vector_store

        self.dimension = dimension
        self.uri = uri or config.mongodb_uri
        self.database_name = database or config.mongodb_database
        self.collection_name = collection or config.mongodb_collection
        self.vector_index = vector_index or config.mongodb_vector_index

        self._client = None
        self._collection = None

        logger.info(
            f"MongoDBVectorStore initialized: db={self.database_name}, "
            f"collection={self.collection_name}"
        )

    def _connect(self):
        """Establish connection to MongoDB."""
        if self._collection is not None:
            return

        if not self.uri:
            raise ValueError("MongoDB URI not configured. Set MONGODB_URI environment variable.")

        try:
            from pymongo import MongoClient
        except ImportError:
            raise ImportError(
                "pymongo is required for MongoDB. Install with: pip install 'pymongo[srv]'"
            )

        self._client = MongoClient(self.uri)
        self._collection = self._client[self.database_name][self.collection_name]
        self._client.admin.command("ping")
        logger.info("Connected to MongoDB Atlas")

    def upsert(self, tenant_id: str, chunks: List[IndexedChunk]) -> int:
        from pymongo import UpdateOne

        _check_tenant(tenant_id, chunks)
        valid = [c for c in chunks if c.embedding is not None]
        if not valid:
            return 0

        self._connect()
        operations = [
            UpdateOne(
                {"_id": chunk.id, "scrape_id": tenant_id},
                {"$set": {
                    "scrape_id": tenant_id,
                    "locator": chunk.locator,
                    "text": chunk.text,
                    "chunk_index": chunk.chunk_index,
                    "metadata": chunk.metadata,
                    "embedding": chunk.embedding,
                }},
                upsert=True,
            )
            for chunk in valid
        ]
        result = self._collection.bulk_write(operations)
        written = result.upserted_count + result.modified_count
        logger.debug(f"Upserted {written} chunks for tenant {tenant_id} in MongoDB")
        return written

    def build_search_pipeline(
        self, tenant_id: str, query_embedding: List[float], top_k: int
    ) -> List[Dict[str, Any]]:
        """Aggregation pipeline with the tenant filter inside $vectorSearch."""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        return [
            {
                "$vectorSearch": {
                    "index": self.vector_index,
                    "path": "embedding",
                    "queryVector": query_embedding,
                    "numCandidates": top_k * 10,
                    "limit": top_k,
                    "filter": {"scrape_id": {"$eq": tenant_id}},
                }
            },
            {
                "$project": {
                    "_id": 1,
                    "scrape_id": 1,
                    "locator": 1,
                    "text": 1,
                    "chunk_index": 1,
                    "metadata": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
        ]

    def search(self, tenant_id: str, query_embedding: List[float], top_k: int = 20) -> List[RawHit]:
        self._connect()
        docs = self._collection.aggregate(self.build_search_pipeline(tenant_id, query_embedding, top_k))

        hits = []
        for doc in docs:
            chunk = IndexedChunk(
                id=doc["_id"],
                text=doc["text"],
                scrape_id=doc["scrape_id"],
                locator=doc["locator"],
                chunk_index=doc.get("chunk_index", 0),
                metadata=doc.get("metadata", {}),
            )
            # Atlas cosine score is (1 + cos) / 2; convert back to cosine
            hits.append(RawHit(chunk=chunk, score=2 * float(doc.get("score", 0.5)) - 1))

        logger.debug(f"MongoDB search for tenant {tenant_id} returned {len(hits)} hits")
        return hits

    def delete(self, tenant_id: str, chunk_ids: List[str]) -> int:
        self._connect()
        result = self._collection.delete_many({"scrape_id": tenant_id, "_id": {"$in": chunk_ids}})
        return result.deleted_count

    def delete_locators(self, tenant_id: str, locators: List[str]) -> int:
        self._connect()
        result = self._collection.delete_many({"scrape_id": tenant_id, "locator": {"$in": locators}})
        return result.deleted_count

    def delete_tenant(self, tenant_id: str) -> int:
        self._connect()
        result = self._collection.delete_many({"scrape_id": tenant_id})
        logger.info(f"Deleted {result.deleted_count} chunks of tenant {tenant_id} from MongoDB")
        return result.deleted_count

    def count(self, tenant_id: str) -> int:
        self._connect()
        return self._collection.count_documents({"scrape_id": tenant_id})

    def create_vector_index(self) -> Dict[str, Any]:
        """
        Create the Atlas Vector Search index with the tenant filter field.

        Returns:
            The index definition used
        """
        from pymongo.operations import SearchIndexModel

        definition = {
            "fields": [
                {
                    "type": "vector",
                    "path": "embedding",
                    "numDimensions": self.dimension,
                    "similarity": "cosine",
                },
                {"type": "filter", "path": "scrape_id"},
            ]
        }

        self._connect()
        self._collection.create_search_index(
            SearchIndexModel(definition=definition, name=self.vector_index, type="vectorSearch")
        )
        logger.info(f"Created vector search index '{self.vector_index}'")
        return definition


def create_vector_store(
    dimension: int,
    provider: Optional[str] = None,
    config: Optional[VectorStoreConfig] = None,
) -> BaseVectorStore:
    """
    Create the configured vector store backend.

    Args:
        dimension: Embedding dimension
        provider: "faiss" or "mongodb" (default from config)
        config: Optional VectorStoreConfig

    Raises:
        ValueError: If the provider is unknown
    """
    config = config or get_settings().vector_store
    provider = provider or config.provider

    if provider == "faiss":
        return FAISSVectorStore(dimension=dimension, index_dir=config.faiss_index_dir)
    if provider == "mongodb":
        return MongoDBVectorStore(
            dimension=dimension,
            uri=config.mongodb_uri,
            database=config.mongodb_database,
            collection=config.mongodb_collection,
            vector_index=config.mongodb_vector_index,
        )
    raise ValueError(f"Unknown vector store provider: {provider}")

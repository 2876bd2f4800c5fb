"""
Markdown Chunker Module

Splits the markdown blobs produced by connectors into chunks ready for
embedding, keeping each chunk's heading trail so it still makes sense
on its own.

Chunking Strategy:
- Header split: MarkdownHeaderTextSplitter on #, ## and ### headings
- Size split: RecursiveCharacterTextSplitter on natural boundaries
- Every chunk is prefixed with the headings it lives under
- Optional "Context: ..." prefix (e.g. the page title)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from langchain_text_splitters import MarkdownHeaderTextSplitter, RecursiveCharacterTextSplitter

from config.settings import get_settings, ChunkingConfig

logger = logging.getLogger(__name__)


@dataclass
class IndexedChunk:
    """
    A chunk as stored in the vector store.

    Attributes:
        text: Chunk text (with heading prefix)
        scrape_id: Tenant the chunk belongs to
        locator: URL/ID of the source item
        chunk_index: Position of the chunk inside its item
        id: Unique id, "{scrape_id}/{locator}#{chunk_index}" when omitted
        metadata: Additional info (title, knowledge group, ...)
        embedding: Vector embedding (populated by the indexer)
    """

    text: str
    scrape_id: str
    locator: str
    chunk_index: int = 0
    id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"{self.scrape_id}/{self.locator}#{self.chunk_index}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary for storage."""
        return {
            "id": self.id,
            "text": self.text,
            "scrape_id": self.scrape_id,
            "locator": self.locator,
            "chunk_index": self.chunk_index,
            "metadata": self.metadata,
            "embedding": self.embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexedChunk":
        """Create IndexedChunk from dictionary."""
        return cls(
            id=data.get("id", ""),
            text=data["text"],
            scrape_id=data["scrape_id"],
            locator=data["locator"],
            chunk_index=data.get("chunk_index", 0),
            metadata=data.get("metadata", {}),
            embedding=data.get("embedding"),
        )


class MarkdownChunker:
    """
    Splits markdown into heading-aware chunks.

    Example:
        chunker = MarkdownChunker()
        chunks = chunker.split_item(
            scrape_id="acme", locator="https://acme.dev/faq",
            text="# FAQ\\n\\n## Billing\\n\\nWe bill monthly.",
        )
    """

    HEADERS = [("#", "h1"), ("##", "h2"), ("###", "h3")]

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        config: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the chunker.

        Args:
            chunk_size: Max characters per chunk (default from config)
            chunk_overlap: Overlap between consecutive pieces (default from config)
            config: Optional ChunkingConfig instance
        """
        self.config = config or get_settings().chunking
        self.chunk_size = chunk_size or self.config.chunk_size
        self.chunk_overlap = min(
            chunk_overlap if chunk_overlap is not None else self.config.chunk_overlap,
            self.chunk_size // 2,
        )

        self._header_splitter = MarkdownHeaderTextSplitter(
            headers_to_split_on=self.HEADERS,
            strip_headers=True,
        )
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            length_function=len,
            separators=["\n\n", "\n", ". ", "? ", "! ", " ", ""],
            keep_separator=True,
        )

        logger.debug(
            f"MarkdownChunker initialized: chunk_size={self.chunk_size}, "
            f"overlap={self.chunk_overlap}"
        )

    def _heading_trail(self, metadata: Dict[str, Any]) -> str:
        lines = []
        for marker, key in self.HEADERS:
            if metadata.get(key):
                lines.append(f"{marker} {metadata[key]}")
        return "\n".join(lines)

    def split_text(self, text: str, context: Optional[str] = None) -> List[str]:
        """
        Split markdown into chunk texts.

        Args:
            text: Markdown text
            context: Optional context line prefixed to every chunk

        Returns:
            List of chunk texts (empty pieces dropped)
        """
        if not text or not text.strip():
            return []

        prefix = f"Context: {context}\n---\n" if context else ""
        pieces: List[str] = []

        for section in self._header_splitter.split_text(text):
            trail = self._heading_trail(section.metadata)
            for piece in self._splitter.split_text(section.page_content):
                piece = piece.strip()
                if not piece:
                    continue
                body = f"{trail}\n\n{piece}" if trail else piece
                pieces.append(prefix + body)

        # A document made only of headings still deserves one chunk
        if not pieces and text.strip():
            pieces.append(prefix + text.strip())

        return pieces

    def split_item(
        self,
        scrape_id: str,
        locator: str,
        text: str,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[IndexedChunk]:
        """
        Split one content item into IndexedChunks.

        Args:
            scrape_id: Tenant the chunks belong to
            locator: Source URL/ID
            text: Markdown text of the item
            title: Item title, stored in metadata
            metadata: Extra metadata for every chunk

        Returns:
            List of IndexedChunk objects without embeddings
        """
        base_metadata = dict(metadata or {})
        if title:
            base_metadata["title"] = title

        chunks = [
            IndexedChunk(
                text=piece,
                scrape_id=scrape_id,
                locator=locator,
                chunk_index=i,
                metadata=dict(base_metadata),
            )
            for i, piece in enumerate(self.split_text(text))
        ]

        logger.debug(f"Split {locator} into {len(chunks)} chunks")
        return chunks

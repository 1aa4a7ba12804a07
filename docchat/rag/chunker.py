"""Text chunking with overlap for the RAG pipeline.

Wraps LangChain's recursive character splitter so chunks break on
paragraphs, then lines, then words before falling back to raw characters.
"""
from typing import Any, Dict, List
from dataclasses import dataclass, field
import structlog
from langchain_core.documents import Document
from langchain_text_splitters import RecursiveCharacterTextSplitter

from docchat import config

logger = structlog.get_logger()


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class TextChunker:
    """Character-based recursive splitter with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default: uploaded-file size)
            chunk_overlap: Overlap between chunks in characters (default: uploaded-file overlap)
        """
        self.chunk_size = chunk_size if chunk_size is not None else config.PDF_CHUNK_SIZE
        self.chunk_overlap = (
            chunk_overlap if chunk_overlap is not None else config.PDF_CHUNK_OVERLAP
        )

        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")

        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            add_start_index=True,
        )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    @classmethod
    def for_uploads(cls) -> "TextChunker":
        return cls(config.PDF_CHUNK_SIZE, config.PDF_CHUNK_OVERLAP)

    @classmethod
    def for_web_pages(cls) -> "TextChunker":
        return cls(config.WEB_CHUNK_SIZE, config.WEB_CHUNK_OVERLAP)

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split a single text into overlapping chunks."""
        if not text or not text.strip():
            return []
        return self.split_documents([Document(page_content=text)])

    def split_documents(self, documents: List[Document]) -> List[TextChunk]:
        """Split documents into chunks that keep each document's metadata.

        Chunk indices run across the whole batch, so a multi-page PDF gets
        one continuous sequence.

        Args:
            documents: LangChain documents (e.g. one per PDF page)

        Returns:
            List of TextChunk objects
        """
        documents = [doc for doc in documents if doc.page_content and doc.page_content.strip()]
        if not documents:
            return []

        splits = self._splitter.split_documents(documents)

        chunks = []
        for index, split in enumerate(splits):
            metadata = dict(split.metadata)
            start = metadata.pop("start_index", 0)
            if start is None or start < 0:
                start = 0

            chunks.append(
                TextChunk(
                    content=split.page_content,
                    char_start=start,
                    char_end=start + len(split.page_content),
                    chunk_index=index,
                    metadata=metadata,
                )
            )

        if chunks:
            logger.info(
                "text_chunked",
                document_count=len(documents),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }

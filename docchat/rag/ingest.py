"""Ingest pipeline for a user's knowledge base.

Orchestrates:
- Loading uploaded files (PDF text, OCR fallback, images) and web pages
- Text chunking
- Embedding generation
- Chunk rows in SQLite and vectors in FAISS, sharing the same IDs
"""
import asyncio
from pathlib import Path
from typing import List, Dict, Any, Optional
import structlog
from langchain_core.documents import Document

from docchat import db
from docchat.llm_client import ollama_client
from docchat.rag.chunker import TextChunk, TextChunker
from docchat.rag.loaders import DocumentLoader
from docchat.rag.store_faiss import FAISSVectorStore, get_vector_store
from docchat.rag.web import WebLoader

logger = structlog.get_logger()

# Serialises index writes so the FAISS file and the chunks table stay in step
_write_lock = asyncio.Lock()


class IngestPipeline:
    """Pipeline for ingesting uploads and web pages into the RAG system."""

    def __init__(
        self,
        vector_store: Optional[FAISSVectorStore] = None,
        loader: Optional[DocumentLoader] = None,
        web_loader: Optional[WebLoader] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            vector_store: Vector store (the shared store is used if not provided)
            loader: Loader for uploaded files
            web_loader: Loader for web pages
        """
        self.vector_store = vector_store
        self.loader = loader or DocumentLoader()
        self.web_loader = web_loader or WebLoader()
        self.upload_chunker = TextChunker.for_uploads()
        self.web_chunker = TextChunker.for_web_pages()

    async def _ensure_vector_store(self) -> FAISSVectorStore:
        if self.vector_store is not None:
            return self.vector_store
        return await get_vector_store()

    async def store_chunks(
        self, user_id: str, chunks: List[TextChunk], source_type: str
    ) -> List[int]:
        """Embed chunks and persist them for a user.

        Rows are written first so their IDs can key the vectors; if the
        vector add fails the rows are removed again.

        Returns:
            Chunk IDs (also the FAISS vector IDs)
        """
        if not chunks:
            return []

        store = await self._ensure_vector_store()
        embeddings = await ollama_client.embed_texts([chunk.content for chunk in chunks])

        rows = [
            {
                "source": chunk.metadata.get("source", "unknown"),
                "source_type": source_type,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "char_start": chunk.char_start,
                "metadata": chunk.metadata,
            }
            for chunk in chunks
        ]

        async with _write_lock:
            chunk_ids = db.insert_chunks(user_id, rows)
            try:
                await store.add_vectors(embeddings, chunk_ids)
                await store.save_index()
            except Exception:
                await store.remove_vectors(chunk_ids)
                db.delete_chunks(chunk_ids)
                raise

        return chunk_ids

    async def ingest_file(
        self,
        file_path: Path,
        user_id: str,
        source_name: Optional[str] = None,
        remove_after: bool = True,
    ) -> List[TextChunk]:
        """Ingest one uploaded file.

        Args:
            file_path: Path to the saved upload
            user_id: Owner of the resulting chunks
            source_name: Original file name shown as the source
            remove_after: Delete the file once it has been processed

        Returns:
            The stored chunks

        Raises:
            UnsupportedFileType, DocumentLoadError: From the loader
            RuntimeError: If embedding fails
        """
        file_path = Path(file_path)
        source = source_name or file_path.name
        logger.info("ingesting_file", source=source, user_id=user_id)

        try:
            docs = await asyncio.to_thread(self.loader.load, file_path, source)
            chunks = self.upload_chunker.split_documents(docs)

            if not chunks:
                logger.warning("no_chunks_created", source=source)
                return []

            await self.store_chunks(user_id, chunks, source_type="file")
        finally:
            if remove_after:
                try:
                    file_path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("upload_cleanup_failed", path=str(file_path), error=str(e))

        stats = self.upload_chunker.get_chunk_stats(chunks)
        logger.info(
            "file_ingested",
            source=source,
            chunks_created=stats["chunk_count"],
            avg_chunk_size=stats["avg_chunk_size"],
        )
        return chunks

    async def ingest_url(self, url: str, user_id: str) -> Dict[str, Any]:
        """Crawl a site from url and ingest every page loaded.

        Returns:
            Dict with 'pages' (URLs stored) and 'chunks' (TextChunk list)

        Raises:
            WebLoadError: If the starting page cannot be fetched
        """
        documents: List[Document] = await self.web_loader.crawl(url)

        pages = []
        all_chunks: List[TextChunk] = []
        for doc in documents:
            chunks = self.web_chunker.split_documents([doc])
            if not chunks:
                continue

            await self.store_chunks(user_id, chunks, source_type="web")
            pages.append(doc.metadata.get("source", url))
            all_chunks.extend(chunks)
            logger.info("page_ingested", url=doc.metadata.get("source"), chunks_created=len(chunks))

        logger.info("url_ingested", url=url, pages=len(pages), chunks_created=len(all_chunks))
        return {"pages": pages, "chunks": all_chunks}

    async def delete_user_documents(self, user_id: str) -> int:
        """Remove every chunk and vector owned by a user.

        Returns:
            Number of chunks deleted
        """
        store = await self._ensure_vector_store()

        async with _write_lock:
            chunk_ids = db.get_chunk_ids_for_user(user_id)
            if not chunk_ids:
                return 0
            await store.remove_vectors(chunk_ids)
            await store.save_index()
            deleted = db.delete_chunks(chunk_ids)

        logger.info("user_documents_deleted", user_id=user_id, chunks=deleted)
        return deleted

"""Retriever for per-user semantic search.

Handles:
- Query embedding generation
- FAISS vector search with over-fetching
- Filtering chunks down to the requesting user
- Result ranking and context formatting
"""
import math
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
import structlog

from docchat import config, db
from docchat.llm_client import ollama_client
from docchat.rag.store_faiss import FAISSVectorStore, get_vector_store

logger = structlog.get_logger()


@dataclass
class RetrievalResult:
    """A single retrieved chunk with metadata."""

    chunk_id: int
    user_id: str
    content: str
    source: str
    distance: float
    metadata: Dict[str, Any]

    @property
    def display_source(self) -> str:
        """Source with page number when the chunk came from a PDF page."""
        page = self.metadata.get("page")
        if page:
            return f"{self.source} (page {page})"
        return self.source

    @property
    def relevance_score(self) -> float:
        """Map L2 distance onto a 0-1 score; lower distance is more relevant."""
        return math.exp(-self.distance / 2.0)


class Retriever:
    """Semantic retriever that only ever returns the caller's chunks."""

    def __init__(
        self,
        vector_store: Optional[FAISSVectorStore] = None,
        embedding_model: str = None,
        top_k: int = None,
        fetch_multiplier: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: FAISS vector store (the shared store is used if not provided)
            embedding_model: Embedding model name (default from config)
            top_k: Number of results to retrieve (default from config)
            fetch_multiplier: How many extra neighbours to pull before the user filter
        """
        self.vector_store = vector_store
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.fetch_multiplier = fetch_multiplier or config.RETRIEVAL_FETCH_MULTIPLIER

    async def _ensure_vector_store(self) -> FAISSVectorStore:
        if self.vector_store is not None:
            return self.vector_store
        return await get_vector_store()

    async def retrieve(
        self,
        query: str,
        user_id: str,
        top_k: Optional[int] = None,
    ) -> List[RetrievalResult]:
        """Retrieve the user's most relevant chunks for a query.

        The index is shared by all users, so the search over-fetches and
        widens to the whole index if the user's chunks are crowded out.

        Returns:
            List of RetrievalResult objects, best first

        Raises:
            RuntimeError: If retrieval fails
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = top_k or self.top_k

        try:
            store = await self._ensure_vector_store()

            owned = db.count_chunks(user_id)
            if store.vector_count == 0 or owned == 0:
                logger.info("no_documents_for_user", user_id=user_id)
                return []
            # A user with few chunks can never fill top_k
            wanted = min(top_k, owned)

            response = await ollama_client.embeddings(model=self.embedding_model, prompt=query)
            query_embedding = response.get("embedding", [])
            if not query_embedding:
                raise RuntimeError("Empty embedding returned for query")

            fetch_k = min(store.vector_count, top_k * self.fetch_multiplier)
            results = await self._search_for_user(store, query_embedding, user_id, fetch_k)

            if len(results) < wanted and fetch_k < store.vector_count:
                logger.debug("widening_search", fetched=fetch_k, kept=len(results))
                results = await self._search_for_user(
                    store, query_embedding, user_id, store.vector_count
                )

            results = results[:top_k]

            logger.info(
                "retrieval_completed",
                query_length=len(query),
                results_returned=len(results),
                top_distance=results[0].distance if results else None,
            )
            return results

        except Exception as e:
            logger.error(
                "retrieval_failed",
                error=str(e),
                error_type=type(e).__name__,
                query_preview=query[:100],
            )
            raise RuntimeError(f"Retrieval failed: {e}") from e

    async def _search_for_user(
        self,
        store: FAISSVectorStore,
        query_embedding: List[float],
        user_id: str,
        fetch_k: int,
    ) -> List[RetrievalResult]:
        vector_ids, distances = await store.search(query_embedding, top_k=fetch_k)
        distance_by_id = dict(zip(vector_ids, distances))

        results = []
        for chunk in db.get_chunks_by_ids(vector_ids, user_id=user_id):
            # Never hand another user's text to the prompt
            if chunk["user_id"] != user_id:
                logger.warning("foreign_chunk_dropped", chunk_id=chunk["id"])
                continue

            results.append(
                RetrievalResult(
                    chunk_id=chunk["id"],
                    user_id=chunk["user_id"],
                    content=chunk["content"],
                    source=chunk["source"],
                    distance=distance_by_id[chunk["id"]],
                    metadata=chunk["metadata"],
                )
            )

        results.sort(key=lambda r: r.distance)
        return results


def format_context(results: List[RetrievalResult], max_chars: int = None) -> str:
    """Serialize results as 'source: ...\\ncontent: ...' blocks for the prompt.

    Blocks are added best-first until max_chars; the block that overflows is
    truncated only if more than 200 characters of room remain.
    """
    max_chars = max_chars or config.MAX_CONTEXT_CHARS
    parts = []
    total_chars = 0

    for result in results:
        block = f"source: {result.display_source}\ncontent: {result.content.strip()}"

        if total_chars + len(block) > max_chars:
            remaining = max_chars - total_chars
            if remaining > 200:
                parts.append(block[:remaining] + "...")
            break

        parts.append(block)
        total_chars += len(block) + 1

    return "\n".join(parts)


# Singleton instance for convenience
_retriever_instance: Optional[Retriever] = None


def get_retriever() -> Retriever:
    global _retriever_instance
    if _retriever_instance is None:
        _retriever_instance = Retriever()
    return _retriever_instance

"""Shared FAISS index holding every user's chunk vectors.

Vectors are stored under the sqlite row id of their chunk, so a search hit
maps straight back to a row (and its owner). Ownership filtering happens
in the retriever; this module knows nothing about users.
"""
import json
from pathlib import Path
from typing import List, Tuple, Optional, Dict, Any
import numpy as np
import faiss
import structlog

from docchat import config
from docchat.llm_client import ollama_client

logger = structlog.get_logger()

INDEX_TYPE = "IndexIDMap2(IndexFlatL2)"
DIMENSION_PROBE = "dimension probe"


def _as_ids(vector_ids: List[int]) -> np.ndarray:
    return np.asarray(vector_ids, dtype=np.int64)


class FAISSVectorStore:
    """Exact L2 index over chunk embeddings, persisted next to its metadata."""

    def __init__(self, index_dir: Path = None, embedding_model: str = None):
        """Set up paths; nothing is read until init_or_load().

        Args:
            index_dir: Directory for the index files (default: the configured
                VECTOR_INDEX_PATH and METADATA_PATH)
            embedding_model: Embedding model name (default from config)
        """
        if index_dir is None:
            self.index_path = Path(config.VECTOR_INDEX_PATH)
            self.metadata_path = Path(config.METADATA_PATH)
        else:
            self.index_path = Path(index_dir) / "vectors.index"
            self.metadata_path = Path(index_dir) / "metadata.json"
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None
        self.metadata: Dict[str, Any] = {}

    @property
    def vector_count(self) -> int:
        return 0 if self.index is None else self.index.ntotal

    def _require_index(self) -> faiss.Index:
        if self.index is None:
            raise RuntimeError("Vector index is not loaded; call init_or_load() first")
        return self.index

    async def _probe_dimension(self) -> int:
        """Ask the embedding model for one vector and measure it.

        Raises:
            RuntimeError: If the model cannot be reached or returns nothing
        """
        try:
            response = await ollama_client.embeddings(prompt=DIMENSION_PROBE, model=self.embedding_model)
        except Exception as e:
            logger.error("embedding_probe_failed", model=self.embedding_model, error=str(e))
            raise RuntimeError(f"Failed to detect embedding dimension: {e}") from e

        dimension = len(response.get("embedding") or [])
        if not dimension:
            raise RuntimeError(f"Embedding model {self.embedding_model} returned an empty vector")
        return dimension

    async def init_new_index(self, dimension: Optional[int] = None) -> None:
        """Start an empty index (dimension probed from the model if not given)."""
        if dimension is None:
            dimension = await self._probe_dimension()

        self.dimension = dimension
        self.index = faiss.IndexIDMap2(faiss.IndexFlatL2(dimension))
        self.metadata = {
            "embedding_model": self.embedding_model,
            "embedding_dimension": dimension,
            "index_type": INDEX_TYPE,
            "vector_count": 0,
        }
        logger.info("vector_index_created", dimension=dimension, path=str(self.index_path))

    async def load_index(self) -> None:
        """Read the index from disk after checking it matches the current model.

        Raises:
            FileNotFoundError: If the index or its metadata is missing
            ValueError: If the stored index was built with a different dimension
            RuntimeError: If the files are unreadable or the model is unreachable
        """
        for path in (self.index_path, self.metadata_path):
            if not path.exists():
                raise FileNotFoundError(f"Vector index file not found: {path}")

        try:
            metadata = json.loads(self.metadata_path.read_text())
        except (OSError, ValueError) as e:
            raise RuntimeError(f"Unreadable index metadata {self.metadata_path}: {e}") from e

        dimension = await self._probe_dimension()
        stored_dim = metadata.get("embedding_dimension")
        if stored_dim != dimension:
            raise ValueError(
                f"Index at {self.index_path} holds {stored_dim}-d vectors from "
                f"{metadata.get('embedding_model')}, but {self.embedding_model} produces "
                f"{dimension}-d vectors. Delete the index and re-ingest documents."
            )

        try:
            self.index = faiss.read_index(str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to read FAISS index {self.index_path}: {e}") from e

        self.metadata = metadata
        self.dimension = dimension
        logger.info("vector_index_loaded", dimension=dimension, vector_count=self.index.ntotal)

    async def init_or_load(self) -> None:
        """Open the index on disk, or start an empty one when there is none."""
        if self.index_path.exists() and self.metadata_path.exists():
            await self.load_index()
        else:
            await self.init_new_index()

    async def save_index(self) -> None:
        """Persist the index and its metadata."""
        index = self._require_index()
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        self.metadata["vector_count"] = index.ntotal

        try:
            faiss.write_index(index, str(self.index_path))
            self.metadata_path.write_text(json.dumps(self.metadata, indent=2))
        except Exception as e:
            raise RuntimeError(f"Failed to save FAISS index: {e}") from e

        logger.debug("vector_index_saved", vector_count=index.ntotal)

    async def add_vectors(self, embeddings: List[List[float]], vector_ids: List[int]) -> None:
        """Store embeddings under the given chunk ids.

        Raises:
            ValueError: If the counts differ or a vector has the wrong dimension
        """
        index = self._require_index()
        if not embeddings:
            return
        if len(embeddings) != len(vector_ids):
            raise ValueError(f"Got {len(embeddings)} embeddings but {len(vector_ids)} IDs")

        vectors = np.asarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise ValueError(f"Expected {self.dimension}-d embeddings, got shape {vectors.shape}")

        index.add_with_ids(vectors, _as_ids(vector_ids))
        logger.info("vectors_added", count=len(vector_ids), total_vectors=index.ntotal)

    async def remove_vectors(self, vector_ids: List[int]) -> int:
        """Drop vectors by chunk id and return how many were removed."""
        if self.index is None or not vector_ids:
            return 0

        removed = int(self.index.remove_ids(_as_ids(vector_ids)))
        logger.info("vectors_removed", count=removed, total_vectors=self.index.ntotal)
        return removed

    async def search(
        self, query_embedding: List[float], top_k: int = None
    ) -> Tuple[List[int], List[float]]:
        """Nearest chunk ids and their L2 distances, closest first.

        Raises:
            ValueError: If the query has the wrong dimension
        """
        index = self._require_index()
        k = min(top_k or config.RETRIEVAL_TOP_K, index.ntotal)
        if k <= 0:
            return [], []

        query = np.asarray([query_embedding], dtype=np.float32)
        if query.shape[1] != self.dimension:
            raise ValueError(f"Expected a {self.dimension}-d query, got {query.shape[1]}")

        distances, ids = index.search(query, k)

        # -1 marks empty slots
        hits = [(int(i), float(d)) for i, d in zip(ids[0], distances[0]) if i != -1]
        logger.debug("vector_search_completed", k=k, hits=len(hits))
        return [i for i, _ in hits], [d for _, d in hits]

    def get_stats(self) -> Dict[str, Any]:
        """Summary for health checks and the ingest CLI."""
        return {
            "initialized": self.index is not None,
            "vector_count": self.vector_count,
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "index_exists_on_disk": self.index_path.exists(),
        }


_store_instance: Optional[FAISSVectorStore] = None


async def get_vector_store() -> FAISSVectorStore:
    """The process-wide store, opened on first use."""
    global _store_instance
    if _store_instance is None:
        store = FAISSVectorStore()
        await store.init_or_load()
        _store_instance = store
    return _store_instance


def reset_vector_store() -> None:
    """Forget the shared store so the next call reopens it from disk."""
    global _store_instance
    _store_instance = None

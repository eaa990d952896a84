"""Abstract base class for embedding storage and similarity search.

The vector store holds one :class:`~notebookrag.models.rag.EmbeddingRecord`
per (chunk, model) and answers scoped similarity queries.  Ranking,
thresholding and tie-breaking are applied by the vector retriever on top of
whatever candidates the store returns, so stores only need to return
scored candidates.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from notebookrag.models.rag import EmbeddingRecord, RetrievedChunk


# Concrete implementations (notebookrag/providers/vector_store/):
#   SQLiteVectorStore   - vectors in the main SQLite database, numpy cosine scoring
#   ChromaDBVectorStore - ChromaDB persistent collection per embedding model
class IVectorStoreProvider(ABC):
    """Contract for vector storage used by the embedding generator and retriever.

    **Supported metadata filter syntax** (``metadata_filter`` in :meth:`query`),
    evaluated against the owning document's metadata:

    * ``{"category": "residential"}`` - equality.
    * ``{"category": {"$in": ["a", "b"]}}`` - membership.
    * ``{"tags": {"$contains": "heritage"}}`` - list membership or substring.
    * ``{"decision_date": {"$gte": "2020-01-01"}}`` / ``{"$lte": ...}`` - range.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create backing tables / collections if needed."""

    @abstractmethod
    async def upsert_embeddings(self, records: list[EmbeddingRecord]) -> int:
        """Store vectors, replacing any existing vector for the same (chunk, model).

        Returns
        -------
        int
            Number of records written.

        Raises
        ------
        notebookrag.utils.errors.ConsistencyError
            If a record references a chunk that does not exist.
        """

    @abstractmethod
    async def get_content_hashes(self, chunk_ids: list[str], model: str) -> dict[str, str]:
        """Return ``{chunk_id: content_hash}`` for chunks already embedded with *model*."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        model: str,
        notebook_id: str | None = None,
        top_k: int = 10,
        document_ids: list[str] | None = None,
        metadata_filter: dict[str, Any] | None = None,
        min_score: float | None = None,
    ) -> list[RetrievedChunk]:
        """Return scored candidates for *vector* among chunks embedded with *model*.

        Implementations return at least the ``top_k`` best-scoring candidates
        that satisfy the scope and filter (more is allowed); ordering of the
        returned list is not part of the contract.
        """

    @abstractmethod
    async def delete_by_document(self, document_id: str) -> int:
        """Remove every vector belonging to *document_id*; returns the count."""

    @abstractmethod
    async def count(self, notebook_id: str | None = None) -> int:
        """Number of stored vectors, optionally scoped to a notebook."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the backend identifier, e.g. ``"sqlite"``."""

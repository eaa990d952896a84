"""Scoped semantic retrieval over a notebook's embedded chunks.

The retriever embeds the query with the configured embedding provider
(through :class:`~notebookrag.services.ingestion.embedding_generator.EmbeddingGenerator`,
so query calls share the provider throttle), asks the vector store for
candidates in scope, and applies the ranking contract itself:

* only results with ``score >= threshold`` are returned;
* results are ordered by score descending, ties broken by chunk ordinal
  and then chunk id, so equal inputs always rank identically;
* at most ``top_k`` results are returned, and an empty list is a normal
  answer.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import structlog

from notebookrag.models.rag import BatchSearchResult, QueryResult, RetrievedChunk
from notebookrag.providers.vector_store.filters import validate_filter
from notebookrag.utils.errors import NotebookRAGError, ValidationError

if TYPE_CHECKING:
    from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
    from notebookrag.models.job import Job
    from notebookrag.services.ingestion.embedding_generator import EmbeddingGenerator

logger = structlog.get_logger(logger_name=__name__)


class VectorRetriever:
    """Embeds queries and returns thresholded, deterministically ranked chunks."""

    def __init__(
        self,
        embedding_generator: EmbeddingGenerator,
        vector_store: IVectorStoreProvider,
        default_top_k: int = 10,
        default_threshold: float = 0.7,
    ) -> None:
        self._embedder = embedding_generator
        self._vector_store = vector_store
        self._default_top_k = default_top_k
        self._default_threshold = default_threshold

    @property
    def model_label(self) -> str:
        return self._embedder.model_label

    async def retrieve(
        self,
        query: str | None = None,
        notebook_id: str | None = None,
        top_k: int | None = None,
        threshold: float | None = None,
        document_ids: list[str] | None = None,
        metadata_filter: dict[str, Any] | None = None,
        vector: list[float] | None = None,
    ) -> list[RetrievedChunk]:
        """Return up to *top_k* chunks scoring at least *threshold*.

        Exactly one of *query* (text, embedded here) or *vector* (already
        embedded with the same model) must be given.

        Raises
        ------
        ValidationError
            For a missing query, bad ``top_k``/``threshold`` or a malformed
            metadata filter.
        """
        top_k, threshold = self._check_params(top_k, threshold, metadata_filter)
        if vector is None:
            if not query or not query.strip():
                raise ValidationError(message="A query or vector is required")
            vector = await self._embedder.embed_query(query)
        return await self._search(vector, notebook_id, top_k, threshold, document_ids, metadata_filter)

    async def retrieve_batch(
        self,
        queries: list[str],
        notebook_id: str | None = None,
        top_k: int | None = None,
        threshold: float | None = None,
        document_ids: list[str] | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> BatchSearchResult:
        """Run several queries with one embedding call.

        A store failure for one query is recorded on that query's
        :class:`QueryResult` and does not affect the others.  An embedding
        failure affects every query and is raised.
        """
        top_k, threshold = self._check_params(top_k, threshold, metadata_filter)
        cleaned = [q for q in queries if q and q.strip()]
        if not cleaned:
            raise ValidationError(message="At least one non-empty query is required")

        start = time.monotonic()
        vectors = await self._embedder.embed_texts(cleaned)
        results: list[QueryResult] = []
        for query, vector in zip(cleaned, vectors, strict=True):
            try:
                hits = await self._search(
                    vector, notebook_id, top_k, threshold, document_ids, metadata_filter
                )
            except NotebookRAGError as exc:
                logger.warning("batch_query_failed", query=query[:80], error=str(exc))
                results.append(QueryResult(query=query, error=str(exc)))
                continue
            results.append(QueryResult(query=query, results=hits))

        logger.info(
            "batch_search_complete",
            queries=len(cleaned),
            failed=sum(1 for r in results if r.error),
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return BatchSearchResult(
            results=results,
            total_queries=len(cleaned),
            embedding_provider=self.model_label,
        )

    async def handle_batch_search_job(self, job: Job) -> BatchSearchResult:
        """Job handler for ``batch_search`` jobs."""
        payload = job.payload
        return await self.retrieve_batch(
            payload.get("queries", []),
            notebook_id=payload.get("notebook_id"),
            top_k=payload.get("top_k"),
            threshold=payload.get("threshold"),
            document_ids=payload.get("document_ids"),
            metadata_filter=payload.get("metadata_filter"),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_params(
        self,
        top_k: int | None,
        threshold: float | None,
        metadata_filter: dict[str, Any] | None,
    ) -> tuple[int, float]:
        top_k = self._default_top_k if top_k is None else top_k
        threshold = self._default_threshold if threshold is None else threshold
        if top_k < 1:
            raise ValidationError(message="top_k must be >= 1")
        if not -1.0 <= threshold <= 1.0:
            raise ValidationError(message="threshold must be between -1 and 1")
        validate_filter(metadata_filter)
        return top_k, threshold

    async def _search(
        self,
        vector: list[float],
        notebook_id: str | None,
        top_k: int,
        threshold: float,
        document_ids: list[str] | None,
        metadata_filter: dict[str, Any] | None,
    ) -> list[RetrievedChunk]:
        candidates = await self._vector_store.query(
            vector,
            self.model_label,
            notebook_id=notebook_id,
            top_k=top_k,
            document_ids=document_ids,
            metadata_filter=metadata_filter,
            min_score=threshold,
        )
        ranked = sorted(
            (c for c in candidates if c.score >= threshold),
            key=lambda rc: (-rc.score, rc.chunk.ordinal, rc.chunk.id),
        )[:top_k]
        logger.debug(
            "retrieval_complete",
            notebook_id=notebook_id,
            candidates=len(candidates),
            returned=len(ranked),
            top_score=ranked[0].score if ranked else None,
        )
        return ranked


def format_context(chunks: list[RetrievedChunk]) -> str:
    """Render retrieved chunks as a numbered context block for prompts."""
    blocks = []
    for i, rc in enumerate(chunks, start=1):
        label = f" ({rc.chunk.section_label})" if rc.chunk.section_label else ""
        blocks.append(f"[{i}]{label}\n{rc.chunk.text}")
    return "\n\n".join(blocks)

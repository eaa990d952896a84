"""Chunk embedding with content-hash skipping and sub-batch retry.

The generator turns chunks into :class:`~notebookrag.models.rag.EmbeddingRecord`
rows for the configured embedding model:

1. **No-op detection** -- the content hash stored with each existing vector
   is compared against the chunk's hash; unchanged chunks are skipped
   without a provider call.
2. **Batching** -- remaining chunks are embedded ``batch_size`` at a time
   through the provider's shared :class:`~notebookrag.utils.concurrency.ProviderThrottle`.
3. **Isolation** -- a transient :class:`ProviderError` splits the failing
   batch in half and retries each half after a geometric backoff, so one bad
   input cannot sink its neighbours.  Fatal and consistency errors fail the
   batch at once.

The outcome is an :class:`EmbeddingBatchResult` whose embedded, skipped and
failed id lists partition the input.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from notebookrag.models.rag import EmbeddingBatchResult, EmbeddingRecord
from notebookrag.utils.concurrency import get_throttle
from notebookrag.utils.errors import (
    ConsistencyError,
    NotebookRAGError,
    PartialFailure,
    ProviderError,
)

if TYPE_CHECKING:
    from notebookrag.interfaces.embedding_provider import IEmbeddingProvider
    from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
    from notebookrag.models.document import Chunk

logger = structlog.get_logger(logger_name=__name__)


class _Run:
    """Mutable bookkeeping for one :meth:`EmbeddingGenerator.generate` call."""

    def __init__(self) -> None:
        self.embedded: list[str] = []
        self.failed: list[str] = []
        self.errors: list[str] = []
        self.exceptions: list[NotebookRAGError] = []
        self.calls = 0


class EmbeddingGenerator:
    """Embeds chunks and stores one vector per (chunk, model).

    Parameters
    ----------
    embedding_provider:
        Source of vectors; its ``get_model_label()`` names stored records.
    vector_store:
        Destination for records and source of stored content hashes.
    batch_size:
        Chunks per provider call.
    max_attempts:
        Provider attempts for any one chunk before it is marked failed.
    backoff_base:
        Seconds before the first retry; doubled on every further attempt.
    sleep:
        Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider,
        vector_store: IVectorStoreProvider,
        batch_size: int = 100,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._provider = embedding_provider
        self._vector_store = vector_store
        self._batch_size = batch_size
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._dimension: int | None = None

    @property
    def model_label(self) -> str:
        return self._provider.get_model_label()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, chunks: list[Chunk]) -> EmbeddingBatchResult:
        """Embed every chunk whose stored vector is missing or stale.

        Never raises for per-batch provider failures; they are reported in
        ``failed_ids`` and ``errors``.
        """
        result, _ = await self._run(chunks)
        return result

    async def generate_or_raise(self, chunks: list[Chunk]) -> EmbeddingBatchResult:
        """Like :meth:`generate`, but raise when any chunk failed.

        Raises
        ------
        NotebookRAGError
            The underlying non-retryable error, when nothing succeeded and
            the failure was fatal or a consistency problem.
        PartialFailure
            Otherwise, carrying the exact succeeded/failed split.
        """
        result, exceptions = await self._run(chunks)
        if result.ok:
            return result

        if not result.embedded_ids:
            for exc in exceptions:
                if not isinstance(exc, ProviderError):
                    raise exc
        raise PartialFailure(
            message=(
                f"{len(result.failed_ids)} of {len(result.failed_ids) + len(result.succeeded_ids)} "
                f"chunks failed to embed: {'; '.join(result.errors[:3])}"
            ),
            succeeded=result.succeeded_ids,
            failed=result.failed_ids,
            provider_name=self._provider.get_provider_name(),
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string through the provider throttle."""
        vectors = await self.embed_texts([text])
        return vectors[0]

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed arbitrary texts in one provider call (no storage)."""
        if not texts:
            return []
        throttle = get_throttle(self._provider.get_provider_name())
        vectors = await throttle.call(lambda: self._provider.embed(texts))
        self._check_vectors(vectors, len(texts))
        return vectors

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, chunks: list[Chunk]) -> tuple[EmbeddingBatchResult, list[NotebookRAGError]]:
        model = self.model_label
        unique: dict[str, Chunk] = {}
        for chunk in chunks:
            unique.setdefault(chunk.id, chunk)
        if not unique:
            return EmbeddingBatchResult(model=model), []

        stored = await self._vector_store.get_content_hashes(list(unique), model)
        skipped = [cid for cid, c in unique.items() if stored.get(cid) == c.content_hash]
        pending = [c for cid, c in unique.items() if stored.get(cid) != c.content_hash]

        run = _Run()
        for start in range(0, len(pending), self._batch_size):
            await self._embed_batch(pending[start : start + self._batch_size], 0, run)

        result = EmbeddingBatchResult(
            model=model,
            embedded_ids=run.embedded,
            skipped_ids=skipped,
            failed_ids=run.failed,
            errors=run.errors,
            provider_calls=run.calls,
        )
        logger.info(
            "embedding_run_complete",
            model=model,
            embedded=len(run.embedded),
            skipped=len(skipped),
            failed=len(run.failed),
            provider_calls=run.calls,
        )
        return result, run.exceptions

    async def _embed_batch(self, batch: list[Chunk], attempt: int, run: _Run) -> None:
        throttle = get_throttle(self._provider.get_provider_name())
        texts = [c.text for c in batch]
        try:
            run.calls += 1
            vectors = await throttle.call(lambda: self._provider.embed(texts))
            self._check_vectors(vectors, len(batch))
            records = [
                EmbeddingRecord(
                    chunk_id=chunk.id,
                    model=self.model_label,
                    vector=vector,
                    content_hash=chunk.content_hash,
                )
                for chunk, vector in zip(batch, vectors, strict=True)
            ]
            await self._vector_store.upsert_embeddings(records)
        except ProviderError as exc:
            if attempt + 1 >= self._max_attempts:
                self._fail(batch, exc, run)
                return
            delay = self._backoff_base * (2**attempt)
            logger.warning(
                "embedding_batch_retry",
                batch_size=len(batch),
                attempt=attempt + 1,
                delay=delay,
                error=str(exc),
            )
            await self._sleep(delay)
            if len(batch) == 1:
                await self._embed_batch(batch, attempt + 1, run)
                return
            mid = len(batch) // 2
            await self._embed_batch(batch[:mid], attempt + 1, run)
            await self._embed_batch(batch[mid:], attempt + 1, run)
            return
        except NotebookRAGError as exc:
            self._fail(batch, exc, run)
            return

        run.embedded.extend(c.id for c in batch)

    def _fail(self, batch: list[Chunk], exc: NotebookRAGError, run: _Run) -> None:
        logger.error(
            "embedding_batch_failed",
            batch_size=len(batch),
            error_kind=exc.kind,
            error=str(exc),
        )
        run.failed.extend(c.id for c in batch)
        run.errors.append(f"{exc.kind}: {exc}")
        run.exceptions.append(exc)

    def _check_vectors(self, vectors: list[list[float]], expected: int) -> None:
        provider = self._provider.get_provider_name()
        if len(vectors) != expected:
            raise ConsistencyError(
                message=f"expected {expected} vectors, got {len(vectors)}",
                provider_name=provider,
            )
        dims = {len(v) for v in vectors}
        if len(dims) > 1:
            raise ConsistencyError(
                message=f"provider returned mixed vector dimensions {sorted(dims)}",
                provider_name=provider,
            )
        if not dims:
            return
        (dim,) = dims
        if self._dimension is None:
            self._dimension = dim
        elif dim != self._dimension:
            raise ConsistencyError(
                message=f"vector dimension changed from {self._dimension} to {dim}",
                provider_name=provider,
            )

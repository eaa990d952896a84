"""ChromaDB vector store provider adapter.

Wraps ``chromadb.PersistentClient`` to implement :class:`IVectorStoreProvider`.
Each embedding model label gets its own cosine-space collection, so vectors
of different dimensions never share an index.  Chunk text and document
metadata stay in the document store; Chroma holds only ids, scope keys and
the content hash the vector was computed from.
"""

from __future__ import annotations

import os
import re
from typing import Any

# Disable ChromaDB telemetry before importing chromadb.  A version mismatch
# between ChromaDB's bundled PostHog client and the installed one raises
# "capture() takes 1 positional argument but 3 were given".
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import posthog

posthog.disabled = True

import chromadb
import structlog

from notebookrag.interfaces.document_store import IDocumentStore
from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
from notebookrag.models.rag import EmbeddingRecord, RetrievedChunk
from notebookrag.providers.vector_store.filters import matches_filter
from notebookrag.utils.errors import ConsistencyError, ProviderError

logger = structlog.get_logger(logger_name=__name__)

_COLLECTION_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")
_PAGE_SIZE = 5000


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """Embedding function that is never called.

    Vectors are always passed in precomputed; without this ChromaDB loads
    its default ONNX model on collection creation.
    """

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError("notebookrag passes precomputed embeddings to ChromaDB")

    def name(self) -> str:
        return "noop_precomputed"


class ChromaDBVectorStore(IVectorStoreProvider):
    """Vector store backed by ChromaDB with local persistence.

    The document store is injected so that upserts can reject vectors for
    chunks that do not exist and queries can hydrate chunk text and
    document metadata.
    """

    def __init__(
        self,
        document_store: IDocumentStore,
        persist_directory: str = "./data/chromadb",
        collection_prefix: str = "notebookrag_chunks",
    ) -> None:
        self._document_store = document_store
        self._persist_directory = persist_directory
        self._collection_prefix = collection_prefix
        self._client = chromadb.PersistentClient(
            path=persist_directory,
            settings=chromadb.config.Settings(anonymized_telemetry=False),
        )
        self._collections: dict[str, Any] = {}

    async def initialize(self) -> None:
        for collection in self._client.list_collections():
            name = getattr(collection, "name", collection)
            logger.debug("chromadb_collection_found", collection=name)
        logger.info("chromadb_vector_store_initialized", path=self._persist_directory)

    # ------------------------------------------------------------------
    # IVectorStoreProvider implementation
    # ------------------------------------------------------------------

    async def upsert_embeddings(self, records: list[EmbeddingRecord], batch_size: int = 500) -> int:
        """Upsert vectors, paginated by *batch_size* to bound peak memory."""
        if not records:
            return 0
        chunk_ids = sorted({r.chunk_id for r in records})
        chunks = {c.id: c for c in await self._document_store.get_chunks_by_ids(chunk_ids)}
        missing = [cid for cid in chunk_ids if cid not in chunks]
        if missing:
            raise ConsistencyError(
                message=f"Cannot store embeddings for missing chunks: {missing[:5]}",
                provider_name=self.get_provider_name(),
            )

        by_model: dict[str, list[EmbeddingRecord]] = {}
        for record in records:
            by_model.setdefault(record.model, []).append(record)

        try:
            for model, model_records in by_model.items():
                collection = self._collection_for(model)
                for start in range(0, len(model_records), batch_size):
                    batch = model_records[start : start + batch_size]
                    collection.upsert(
                        ids=[r.chunk_id for r in batch],
                        embeddings=[r.vector for r in batch],
                        metadatas=[
                            {
                                "document_id": chunks[r.chunk_id].document_id,
                                "notebook_id": chunks[r.chunk_id].notebook_id,
                                "ordinal": chunks[r.chunk_id].ordinal,
                                "content_hash": r.content_hash,
                            }
                            for r in batch
                        ],
                    )
        except Exception as exc:
            raise ProviderError(
                message=f"ChromaDB upsert failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("chromadb_upsert", count=len(records), models=sorted(by_model))
        return len(records)

    async def get_content_hashes(self, chunk_ids: list[str], model: str) -> dict[str, str]:
        if not chunk_ids:
            return {}
        collection = self._collection_for(model)
        hashes: dict[str, str] = {}
        for start in range(0, len(chunk_ids), _PAGE_SIZE):
            page = collection.get(ids=chunk_ids[start : start + _PAGE_SIZE], include=["metadatas"])
            for cid, meta in zip(page["ids"], page["metadatas"] or [], strict=False):
                if meta and meta.get("content_hash"):
                    hashes[cid] = meta["content_hash"]
        return hashes

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
        collection = self._collection_for(model)
        total = collection.count()
        if total == 0:
            return []

        # Metadata filters run in Python against the document store, so a
        # filtered query must see every candidate in scope.
        fetch_k = total if metadata_filter else min(total, max(top_k * 4, top_k))
        kwargs: dict[str, Any] = {
            "query_embeddings": [vector],
            "n_results": fetch_k,
            "include": ["distances", "metadatas"],
        }
        where = self._scope_where(notebook_id, document_ids)
        if where:
            kwargs["where"] = where

        try:
            raw = collection.query(**kwargs)
        except Exception as exc:
            if "dimension" in str(exc).lower():
                raise ConsistencyError(
                    message=f"ChromaDB dimension mismatch for {model}: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc
            raise ProviderError(
                message=f"ChromaDB query failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        ids = raw["ids"][0] if raw.get("ids") else []
        distances = raw["distances"][0] if raw.get("distances") else [0.0] * len(ids)
        if not ids:
            return []

        chunks = {c.id: c for c in await self._document_store.get_chunks_by_ids(list(ids))}
        doc_metadata: dict[str, dict[str, Any]] = {}
        results: list[RetrievedChunk] = []
        for chunk_id, distance in zip(ids, distances, strict=True):
            chunk = chunks.get(chunk_id)
            if chunk is None:
                logger.warning("chromadb_orphan_vector", chunk_id=chunk_id, model=model)
                continue
            score = max(-1.0, min(1.0, 1.0 - float(distance)))
            if min_score is not None and score < min_score:
                continue
            if chunk.document_id not in doc_metadata:
                document = await self._document_store.get_document(chunk.document_id)
                doc_metadata[chunk.document_id] = dict(document.metadata)
            metadata = doc_metadata[chunk.document_id]
            if not matches_filter(metadata, metadata_filter):
                continue
            results.append(RetrievedChunk(chunk=chunk, score=score, document_metadata=metadata))

        results.sort(key=lambda rc: (-rc.score, rc.chunk.ordinal, rc.chunk.id))
        logger.info(
            "chromadb_query",
            model=model,
            raw_results=len(ids),
            results_count=min(len(results), top_k),
            top_score=results[0].score if results else 0.0,
        )
        return results[:top_k]

    async def delete_by_document(self, document_id: str) -> int:
        deleted = 0
        try:
            for name in self._model_collection_names():
                collection = self._client.get_collection(name=name)
                existing = collection.get(where={"document_id": document_id})
                count = len(existing["ids"]) if existing["ids"] else 0
                if count:
                    collection.delete(where={"document_id": document_id})
                deleted += count
        except Exception as exc:
            raise ProviderError(
                message=f"ChromaDB delete_by_document failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info("chromadb_delete_by_document", document_id=document_id, deleted_count=deleted)
        return deleted

    async def count(self, notebook_id: str | None = None) -> int:
        total = 0
        for name in self._model_collection_names():
            collection = self._client.get_collection(name=name)
            if notebook_id is None:
                total += collection.count()
                continue
            offset = 0
            while True:
                page = collection.get(
                    where={"notebook_id": notebook_id}, include=[], limit=_PAGE_SIZE, offset=offset
                )
                page_ids = page["ids"] or []
                total += len(page_ids)
                if len(page_ids) < _PAGE_SIZE:
                    break
                offset += _PAGE_SIZE
        return total

    def get_provider_name(self) -> str:
        return "chromadb"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _collection_name(self, model: str) -> str:
        return f"{self._collection_prefix}__{_COLLECTION_NAME_RE.sub('_', model)}"[:63]

    def _model_collection_names(self) -> list[str]:
        names = []
        for collection in self._client.list_collections():
            name = getattr(collection, "name", collection)
            if name.startswith(f"{self._collection_prefix}__"):
                names.append(name)
        return names

    def _collection_for(self, model: str):
        name = self._collection_name(model)
        if name not in self._collections:
            # Collections persisted by another ChromaDB version may carry a
            # different embedding function; open them as stored.
            try:
                self._collections[name] = self._client.get_or_create_collection(
                    name=name,
                    metadata={"hnsw:space": "cosine", "model": model},
                    embedding_function=_NoopEmbeddingFunction(),
                )
            except ValueError:
                self._collections[name] = self._client.get_or_create_collection(
                    name=name,
                    metadata={"hnsw:space": "cosine", "model": model},
                )
        return self._collections[name]

    @staticmethod
    def _scope_where(notebook_id: str | None, document_ids: list[str] | None) -> dict[str, Any] | None:
        clauses: list[dict[str, Any]] = []
        if notebook_id is not None:
            clauses.append({"notebook_id": notebook_id})
        if document_ids:
            clauses.append({"document_id": {"$in": list(document_ids)}})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

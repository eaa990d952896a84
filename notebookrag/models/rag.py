"""Retrieval and embedding data models.

Embedding flow:

    1. INGESTION: a document's chunks are stored by the ingestion service.
    2. EMBEDDING: the embedding generator turns chunk text into vectors and
       stores one :class:`EmbeddingRecord` per (chunk, model); re-embedding
       replaces the previous record.
    3. RETRIEVAL: the vector retriever scores stored vectors against a
       query vector and returns :class:`RetrievedChunk` results.
    4. GENERATION: chat and report generation cite retrieved chunks through
       :class:`Citation` snapshots, which never change after the fact.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from notebookrag.models.document import Chunk, utc_now


class EmbeddingRecord(BaseModel):
    """The current vector for one chunk under one embedding model."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    model: str = Field(description='Model label, "{provider}-{model}".')
    vector: list[float]
    content_hash: str = Field(description="Hash of the chunk text the vector was computed from.")
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def dimension(self) -> int:
        return len(self.vector)


class RetrievedChunk(BaseModel):
    """A chunk returned from a similarity query with its score."""

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    score: float = Field(description="Cosine similarity between query and chunk vectors.")
    document_metadata: dict = Field(default_factory=dict)

    def to_citation(self) -> Citation:
        return Citation(
            chunk_id=self.chunk.id,
            document_id=self.chunk.document_id,
            ordinal=self.chunk.ordinal,
            content_hash=self.chunk.content_hash,
            score=self.score,
            section_label=self.chunk.section_label,
        )


class Citation(BaseModel):
    """Immutable snapshot of a chunk used as generation context."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    document_id: str
    ordinal: int
    content_hash: str
    score: float
    section_label: str | None = None


class EmbeddingBatchResult(BaseModel):
    """Outcome of an embedding run.

    ``embedded_ids``, ``skipped_ids`` and ``failed_ids`` partition the
    submitted chunk ids: every id appears in exactly one list.
    """

    model_config = ConfigDict(frozen=True)

    model: str
    embedded_ids: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    provider_calls: int = Field(default=0, ge=0)

    @property
    def succeeded_ids(self) -> list[str]:
        return [*self.embedded_ids, *self.skipped_ids]

    @property
    def ok(self) -> bool:
        return not self.failed_ids


class QueryResult(BaseModel):
    """Ranked results for one query of a batch search."""

    model_config = ConfigDict(frozen=True)

    query: str
    results: list[RetrievedChunk] = Field(default_factory=list)
    error: str | None = None


class BatchSearchResult(BaseModel):
    """Per-query ranked lists for a batch search."""

    model_config = ConfigDict(frozen=True)

    results: list[QueryResult] = Field(default_factory=list)
    total_queries: int = 0
    embedding_provider: str = ""


class IngestionResult(BaseModel):
    """Summary of one document ingestion run."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    notebook_id: str
    chunks_created: int = Field(default=0, ge=0)
    chunks_embedded: int = Field(default=0, ge=0)
    chunks_skipped: int = Field(default=0, ge=0)
    failed_chunk_ids: list[str] = Field(default_factory=list)
    metadata_fields: int = Field(default=0, ge=0)
    metadata_warnings: list[str] = Field(default_factory=list)
    deduplicated: bool = False
    ingestion_time: float = Field(default=0.0, ge=0.0)


class CorpusStats(BaseModel):
    """Aggregate counts for a notebook (or the whole store)."""

    model_config = ConfigDict(frozen=True)

    total_documents: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    total_embeddings: int = Field(default=0, ge=0)
    embedding_models: list[str] = Field(default_factory=list)

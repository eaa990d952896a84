"""notebook-rag domain models - re-exports all public model classes.

Submodules by concern:
    - document.py - documents, chunks and notebook metadata schemas
    - rag.py      - embeddings, retrieval results, citations, batch results
    - job.py      - background job state machine
    - report.py   - report templates, generations and sections
    - chat.py     - chat sessions and messages
"""

from __future__ import annotations

from notebookrag.models.chat import ChatMessage, ChatRole, ChatSession
from notebookrag.models.document import (
    Chunk,
    ChunkType,
    Document,
    DocumentStatus,
    FieldType,
    MetadataField,
    MetadataSchema,
)
from notebookrag.models.job import ALLOWED_TRANSITIONS, Job, JobError, JobKind, JobState, JobStatus
from notebookrag.models.rag import (
    BatchSearchResult,
    Citation,
    CorpusStats,
    EmbeddingBatchResult,
    EmbeddingRecord,
    IngestionResult,
    QueryResult,
    RetrievedChunk,
)
from notebookrag.models.report import (
    ReportGeneration,
    ReportSection,
    ReportStatus,
    ReportTemplate,
    ReportView,
    SectionSpec,
    SectionStatus,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BatchSearchResult",
    "ChatMessage",
    "ChatRole",
    "ChatSession",
    "Chunk",
    "ChunkType",
    "Citation",
    "CorpusStats",
    "Document",
    "DocumentStatus",
    "EmbeddingBatchResult",
    "EmbeddingRecord",
    "FieldType",
    "IngestionResult",
    "Job",
    "JobError",
    "JobKind",
    "JobState",
    "JobStatus",
    "MetadataField",
    "MetadataSchema",
    "QueryResult",
    "ReportGeneration",
    "ReportSection",
    "ReportStatus",
    "ReportTemplate",
    "ReportView",
    "RetrievedChunk",
    "SectionSpec",
    "SectionStatus",
]

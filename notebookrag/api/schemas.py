"""Pydantic request/response schemas for the notebook-rag API.

Request schemas end with ``Request``, response schemas with ``Response``.
Domain models (``Document``, ``JobStatus``, ``ReportView`` ...) are
returned directly where their shape is already the public contract; the
schemas below cover request bodies and responses that have no domain
counterpart.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from notebookrag.models.document import Document, DocumentStatus, MetadataField
from notebookrag.models.rag import Citation, RetrievedChunk
from notebookrag.models.report import SectionSpec


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
    provider: str | None = None
    succeeded: list[str] | None = None
    failed: list[str] | None = None


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    providers: dict[str, Any]
    workers_running: bool


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class UploadResponse(BaseModel):
    """Returned after an upload is accepted."""

    job_id: str
    notebook_id: str
    filename: str


class DocumentSummary(BaseModel):
    """A document without its full text."""

    id: str
    notebook_id: str
    filename: str
    content_type: str
    status: DocumentStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    metadata_warnings: list[str] = Field(default_factory=list)
    chars: int = 0

    @classmethod
    def from_document(cls, document: Document) -> DocumentSummary:
        return cls(
            id=document.id,
            notebook_id=document.notebook_id,
            filename=document.filename,
            content_type=document.content_type,
            status=document.status,
            metadata=document.metadata,
            metadata_warnings=document.metadata_warnings,
            chars=len(document.text),
        )


class DocumentListResponse(BaseModel):
    documents: list[DocumentSummary]
    total: int


class DeleteDocumentResponse(BaseModel):
    document_id: str
    chunks_deleted: int


class MetadataSchemaRequest(BaseModel):
    """Replace a notebook's metadata schema."""

    fields: list[MetadataField] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Semantic search within one notebook."""

    query: str = Field(..., min_length=1, max_length=2000)
    top_k: int | None = Field(default=None, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    document_ids: list[str] | None = None
    metadata_filter: dict[str, Any] | None = None


class SearchResponse(BaseModel):
    query: str
    results: list[RetrievedChunk]
    total_results: int


class BatchSearchRequest(BaseModel):
    """Several queries embedded in one provider call.

    With ``background=true`` the search runs as a ``batch_search`` job and
    the response carries only the job id.
    """

    queries: list[str] = Field(..., min_length=1, max_length=50)
    top_k: int | None = Field(default=None, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    document_ids: list[str] | None = None
    metadata_filter: dict[str, Any] | None = None
    background: bool = False


class JobSubmittedResponse(BaseModel):
    job_id: str


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class ReportTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    sections: list[SectionSpec] = Field(..., min_length=1)


class StartReportRequest(BaseModel):
    template_id: str
    topic: str = Field(..., min_length=1, max_length=500)
    address: str | None = None
    additional_context: str | None = None
    parallel: bool | None = None


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """A user message; omit ``session_id`` to start a new session."""

    message: str = Field(..., min_length=1, max_length=4000)
    session_id: str | None = None


class ChatMessageResponse(BaseModel):
    id: str
    role: str
    content: str
    citations: list[Citation] = Field(default_factory=list)
    incomplete: bool = False
    created_at: str


class ChatMessagesResponse(BaseModel):
    session_id: str
    messages: list[ChatMessageResponse]

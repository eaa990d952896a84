"""FastAPI routes for notebook-rag.

Service dependencies are resolved from ``app.state`` (populated at startup
in main.py) via ``Depends`` using the ``Annotated`` pattern.

# Endpoint                                        Method  Description
# ─────────────────────────────────────────────────────────────────────
# /api/v1/notebooks/{nb}/documents                POST    Upload -> ingest job
# /api/v1/notebooks/{nb}/documents                GET     List documents
# /api/v1/documents/{id}                          GET     One document
# /api/v1/documents/{id}                          DELETE  Delete document
# /api/v1/documents/{id}/embed                    POST    Re-embed -> embed job
# /api/v1/notebooks/{nb}/metadata-schema          PUT     Replace schema
# /api/v1/notebooks/{nb}/metadata-schema          GET     Current schema
# /api/v1/notebooks/{nb}/stats                    GET     Corpus counts
# /api/v1/jobs/{id}                               GET     Job status
# /api/v1/jobs/{id}/cancel                        POST    Cancel job
# /api/v1/notebooks/{nb}/search                   POST    Semantic search
# /api/v1/notebooks/{nb}/search/batch             POST    Batch search
# /api/v1/report-templates                        POST    Create template
# /api/v1/report-templates                        GET     List templates
# /api/v1/notebooks/{nb}/reports                  POST    Start report run
# /api/v1/reports/{id}                            GET     Report + sections
# /api/v1/reports/{id}/sections/{sid}/retry       POST    Retry one section
# /api/v1/notebooks/{nb}/chat                     POST    Streamed chat reply
# /api/v1/notebooks/{nb}/chat/sessions            GET     List sessions
# /api/v1/chat/sessions/{id}/messages             GET     Session messages
# /api/v1/health                                  GET     Health check
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from notebookrag.api.schemas import (
    BatchSearchRequest,
    ChatMessageResponse,
    ChatMessagesResponse,
    ChatRequest,
    DeleteDocumentResponse,
    DocumentListResponse,
    DocumentSummary,
    HealthResponse,
    JobSubmittedResponse,
    MetadataSchemaRequest,
    ReportTemplateRequest,
    SearchRequest,
    SearchResponse,
    StartReportRequest,
    UploadResponse,
)
from notebookrag.models.chat import ChatSession
from notebookrag.models.document import MetadataSchema
from notebookrag.models.job import JobKind, JobStatus
from notebookrag.models.rag import BatchSearchResult, CorpusStats
from notebookrag.models.report import ReportTemplate, ReportView
from notebookrag.pipeline.job_orchestrator import JobOrchestrator
from notebookrag.services.chat_service import ChatService, ChatStream
from notebookrag.services.ingestion.ingestion_service import IngestionService
from notebookrag.services.report_coordinator import ReportCoordinator
from notebookrag.services.retriever import VectorRetriever
from notebookrag.utils.errors import ConsistencyError, NotebookRAGError
from notebookrag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_MAX_FILE_SIZE = 25 * 1024 * 1024
_UPLOAD_CHUNK_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def _get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def _get_retriever(request: Request) -> VectorRetriever:
    return request.app.state.retriever


def _get_report_coordinator(request: Request) -> ReportCoordinator:
    return request.app.state.report_coordinator


def _get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


IngestionDep = Annotated[IngestionService, Depends(_get_ingestion_service)]
OrchestratorDep = Annotated[JobOrchestrator, Depends(_get_orchestrator)]
RetrieverDep = Annotated[VectorRetriever, Depends(_get_retriever)]
ReportsDep = Annotated[ReportCoordinator, Depends(_get_report_coordinator)]
ChatDep = Annotated[ChatService, Depends(_get_chat_service)]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.post("/notebooks/{notebook_id}/documents", status_code=202, response_model=UploadResponse)
async def upload_document(
    notebook_id: str,
    file: UploadFile,
    ingestion: IngestionDep,
) -> UploadResponse:
    """Accept a text, markdown or PDF upload and enqueue its ingestion."""
    chunks: list[bytes] = []
    total_size = 0
    while True:
        chunk = await file.read(_UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total_size += len(chunk)
        if total_size > _MAX_FILE_SIZE:
            raise HTTPException(
                status_code=413,
                detail=f"File too large: maximum is {_MAX_FILE_SIZE // (1024 * 1024)} MB",
            )
        chunks.append(chunk)

    filename = file.filename or "upload"
    job_id = await ingestion.submit(notebook_id, filename, b"".join(chunks), file.content_type)
    return UploadResponse(job_id=job_id, notebook_id=notebook_id, filename=filename)


@router.get("/notebooks/{notebook_id}/documents", response_model=DocumentListResponse)
async def list_documents(notebook_id: str, ingestion: IngestionDep) -> DocumentListResponse:
    documents = await ingestion.list_documents(notebook_id)
    return DocumentListResponse(
        documents=[DocumentSummary.from_document(d) for d in documents],
        total=len(documents),
    )


@router.get("/documents/{document_id}", response_model=DocumentSummary)
async def get_document(document_id: str, ingestion: IngestionDep) -> DocumentSummary:
    return DocumentSummary.from_document(await ingestion.get_document(document_id))


@router.delete("/documents/{document_id}", response_model=DeleteDocumentResponse)
async def delete_document(document_id: str, ingestion: IngestionDep) -> DeleteDocumentResponse:
    chunks = await ingestion.delete_document(document_id)
    return DeleteDocumentResponse(document_id=document_id, chunks_deleted=chunks)


@router.post("/documents/{document_id}/embed", status_code=202, response_model=JobSubmittedResponse)
async def reembed_document(document_id: str, ingestion: IngestionDep) -> JobSubmittedResponse:
    return JobSubmittedResponse(job_id=await ingestion.submit_embed(document_id))


@router.put("/notebooks/{notebook_id}/metadata-schema", response_model=MetadataSchema)
async def put_metadata_schema(
    notebook_id: str,
    body: MetadataSchemaRequest,
    ingestion: IngestionDep,
) -> MetadataSchema:
    return await ingestion.set_metadata_schema(notebook_id, body.fields)


@router.get("/notebooks/{notebook_id}/metadata-schema", response_model=MetadataSchema)
async def get_metadata_schema(notebook_id: str, ingestion: IngestionDep) -> MetadataSchema:
    return await ingestion.get_metadata_schema(notebook_id)


@router.get("/notebooks/{notebook_id}/stats", response_model=CorpusStats)
async def notebook_stats(notebook_id: str, ingestion: IngestionDep) -> CorpusStats:
    return await ingestion.get_stats(notebook_id)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}", response_model=JobStatus)
async def get_job(job_id: str, orchestrator: OrchestratorDep) -> JobStatus:
    return await orchestrator.status(job_id)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatus)
async def cancel_job(job_id: str, orchestrator: OrchestratorDep) -> JobStatus:
    return await orchestrator.cancel(job_id)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@router.post("/notebooks/{notebook_id}/search", response_model=SearchResponse)
async def search(notebook_id: str, body: SearchRequest, retriever: RetrieverDep) -> SearchResponse:
    results = await retriever.retrieve(
        query=body.query,
        notebook_id=notebook_id,
        top_k=body.top_k,
        threshold=body.threshold,
        document_ids=body.document_ids,
        metadata_filter=body.metadata_filter,
    )
    return SearchResponse(query=body.query, results=results, total_results=len(results))


@router.post(
    "/notebooks/{notebook_id}/search/batch",
    response_model=BatchSearchResult | JobSubmittedResponse,
)
async def batch_search(
    notebook_id: str,
    body: BatchSearchRequest,
    retriever: RetrieverDep,
    orchestrator: OrchestratorDep,
) -> BatchSearchResult | JobSubmittedResponse:
    if body.background:
        payload: dict[str, Any] = body.model_dump(exclude={"background"})
        payload["notebook_id"] = notebook_id
        job = await orchestrator.submit(JobKind.BATCH_SEARCH, payload)
        return JobSubmittedResponse(job_id=job.id)
    return await retriever.retrieve_batch(
        body.queries,
        notebook_id=notebook_id,
        top_k=body.top_k,
        threshold=body.threshold,
        document_ids=body.document_ids,
        metadata_filter=body.metadata_filter,
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@router.post("/report-templates", status_code=201, response_model=ReportTemplate)
async def create_report_template(body: ReportTemplateRequest, reports: ReportsDep) -> ReportTemplate:
    return await reports.create_template(body.name, body.sections, description=body.description)


@router.get("/report-templates", response_model=list[ReportTemplate])
async def list_report_templates(request: Request) -> list[ReportTemplate]:
    return await request.app.state.report_store.list_templates()


@router.post("/notebooks/{notebook_id}/reports", status_code=202, response_model=ReportView)
async def start_report(
    notebook_id: str,
    body: StartReportRequest,
    reports: ReportsDep,
    request: Request,
) -> ReportView:
    parallel = body.parallel
    if parallel is None:
        parallel = request.app.state.config["reports"]["parallel"]
    return await reports.start(
        body.template_id,
        notebook_id,
        body.topic,
        address=body.address,
        additional_context=body.additional_context,
        parallel=parallel,
    )


@router.get("/reports/{generation_id}", response_model=ReportView)
async def get_report(generation_id: str, reports: ReportsDep) -> ReportView:
    return await reports.get_report(generation_id)


@router.post("/reports/{generation_id}/sections/{section_id}/retry", response_model=ReportView)
async def retry_report_section(
    generation_id: str,
    section_id: str,
    reports: ReportsDep,
    orchestrator: OrchestratorDep,
) -> ReportView:
    view = await reports.get_report(generation_id)
    if section_id not in {s.id for s in view.sections}:
        raise ConsistencyError(message=f"Section {section_id} is not part of report {generation_id}")
    return await reports.retry_section(section_id, background=orchestrator.is_running)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@router.post("/notebooks/{notebook_id}/chat")
async def chat(notebook_id: str, body: ChatRequest, chat_service: ChatDep) -> StreamingResponse:
    """Stream the assistant reply as ``text/plain``.

    The session and message ids are returned in the ``X-Session-Id`` and
    ``X-Message-Id`` headers.  A client that disconnects mid-reply leaves
    the message stored as incomplete.
    """
    stream = await chat_service.stream_reply(body.session_id, notebook_id, body.message)
    return StreamingResponse(
        _relay(stream),
        media_type="text/plain; charset=utf-8",
        headers={"X-Session-Id": stream.session_id, "X-Message-Id": stream.message_id},
    )


async def _relay(stream: ChatStream) -> AsyncIterator[str]:
    try:
        async for fragment in stream:
            yield fragment
    except NotebookRAGError as exc:
        # Headers are already sent; the partial reply is stored as incomplete.
        _logger.warning(
            "chat_stream_aborted",
            session_id=stream.session_id,
            error_type=type(exc).__name__,
            error=exc.message,
        )
    finally:
        if not stream.finished:
            await stream.cancel()


@router.get("/notebooks/{notebook_id}/chat/sessions", response_model=list[ChatSession])
async def list_chat_sessions(notebook_id: str, chat_service: ChatDep) -> list[ChatSession]:
    return await chat_service.list_sessions(notebook_id)


@router.get("/chat/sessions/{session_id}/messages", response_model=ChatMessagesResponse)
async def get_chat_messages(session_id: str, chat_service: ChatDep) -> ChatMessagesResponse:
    messages = await chat_service.get_messages(session_id)
    return ChatMessagesResponse(
        session_id=session_id,
        messages=[
            ChatMessageResponse(
                id=m.id,
                role=m.role.value,
                content=m.content,
                citations=m.citations,
                incomplete=m.incomplete,
                created_at=m.created_at.isoformat(),
            )
            for m in messages
        ],
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    state = request.app.state
    return HealthResponse(
        status="ok",
        version=request.app.version,
        providers={
            "llm": state.llm.get_provider_name(),
            "llm_model": state.llm.get_model_name(),
            "embedding": state.embedding_generator.model_label,
            "vector_store": state.vector_store.get_provider_name(),
        },
        workers_running=state.orchestrator.is_running,
    )

"""Orchestrator for the document ingestion pipeline.

Pipeline stages: **extract -> store -> chunk -> tag + embed**.

:meth:`IngestionService.submit` is the upload trigger.  It validates the
upload synchronously (unsupported or empty files are rejected before any
job exists), extracts the text, stores the :class:`Document` and returns
the id of an ``ingest`` job.  The job handler then:

    1. TextChunker        -- splits the text into deterministic chunks
    2. IDocumentStore     -- persists the chunks (before any embedding)
    3. MetadataExtractor  -- fills the notebook's schema fields via the LLM
    4. EmbeddingGenerator -- embeds the chunks into the vector store

Metadata extraction and embedding run concurrently; the former never fails
the job (missing fields become null), the latter raises
:class:`PartialFailure` with the exact split when some chunks failed.
Every step is idempotent, so a retried job only redoes what is missing.

All dependencies are injected via the constructor, so providers can be
swapped (e.g. OpenAI -> Ollama) without changing this class.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import TYPE_CHECKING

import structlog

from notebookrag.models.document import Document, DocumentStatus, MetadataField, MetadataSchema
from notebookrag.models.job import Job, JobKind
from notebookrag.models.rag import CorpusStats, EmbeddingBatchResult, IngestionResult
from notebookrag.services.ingestion.metadata_extractor import ExtractedMetadata, MetadataExtractor
from notebookrag.services.ingestion.text_extraction import extract_text, resolve_content_type
from notebookrag.utils.errors import ValidationError
from notebookrag.utils.text_normalizer import content_hash

if TYPE_CHECKING:
    from notebookrag.interfaces.document_store import IDocumentStore
    from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
    from notebookrag.pipeline.job_orchestrator import JobOrchestrator
    from notebookrag.services.ingestion.chunker import TextChunker
    from notebookrag.services.ingestion.embedding_generator import EmbeddingGenerator

logger = structlog.get_logger(logger_name=__name__)


class IngestionService:
    """Coordinates upload, chunking, metadata tagging and embedding.

    Parameters
    ----------
    document_store:
        Documents, chunks and metadata schemas.
    vector_store:
        Embedding storage; cleaned up first when a document is deleted.
    chunker:
        Deterministic text splitter.
    metadata_extractor:
        LLM-backed schema field extractor.
    embedding_generator:
        Batched, idempotent chunk embedder.
    orchestrator:
        Job orchestrator that runs ``ingest`` and ``embed`` jobs.
    dedupe_by_content_hash:
        When ``True``, re-uploading identical text into the same notebook
        returns the existing document instead of creating a new one.
    """

    def __init__(
        self,
        document_store: IDocumentStore,
        vector_store: IVectorStoreProvider,
        chunker: TextChunker,
        metadata_extractor: MetadataExtractor,
        embedding_generator: EmbeddingGenerator,
        orchestrator: JobOrchestrator,
        dedupe_by_content_hash: bool = False,
    ) -> None:
        self._documents = document_store
        self._vector_store = vector_store
        self._chunker = chunker
        self._metadata_extractor = metadata_extractor
        self._embedder = embedding_generator
        self._orchestrator = orchestrator
        self._dedupe = dedupe_by_content_hash

    # ------------------------------------------------------------------
    # Upload trigger
    # ------------------------------------------------------------------

    async def submit(
        self,
        notebook_id: str,
        filename: str,
        data: bytes,
        content_type: str | None = None,
    ) -> str:
        """Store an uploaded document and enqueue its ingestion.

        Returns
        -------
        str
            The id of the ``ingest`` job tracking the document.

        Raises
        ------
        ValidationError
            For a missing notebook id, an empty upload, an unsupported file
            type, or a file with no extractable text.
        """
        if not notebook_id or not notebook_id.strip():
            raise ValidationError(message="notebook_id is required")
        if not data:
            raise ValidationError(message=f"Upload {filename!r} is empty")

        resolved = resolve_content_type(filename, content_type)
        # PDF parsing is CPU-bound; keep it off the event loop.
        text = await asyncio.to_thread(extract_text, data, filename, resolved)
        digest = content_hash(text)

        if self._dedupe:
            existing = await self._documents.find_by_content_hash(notebook_id, digest)
            if existing is not None:
                job = await self._orchestrator.submit(
                    JobKind.INGEST, {"document_id": existing.id, "deduplicated": True}
                )
                logger.info(
                    "upload_deduplicated",
                    notebook_id=notebook_id,
                    document_id=existing.id,
                    job_id=job.id,
                )
                return job.id

        document = Document(
            id=str(uuid.uuid4()),
            notebook_id=notebook_id,
            filename=filename,
            content_type=resolved,
            content_hash=digest,
            text=text,
        )
        await self._documents.add_document(document)
        job = await self._orchestrator.submit(JobKind.INGEST, {"document_id": document.id})
        logger.info(
            "upload_accepted",
            notebook_id=notebook_id,
            document_id=document.id,
            filename=filename,
            chars=len(text),
            job_id=job.id,
        )
        return job.id

    # ------------------------------------------------------------------
    # Job handlers
    # ------------------------------------------------------------------

    async def submit_embed(self, document_id: str) -> str:
        """Enqueue an ``embed`` job that (re-)embeds a document's chunks."""
        await self._documents.get_document(document_id)
        job = await self._orchestrator.submit(JobKind.EMBED, {"document_id": document_id})
        return job.id

    async def handle_ingest_job(self, job: Job) -> IngestionResult:
        """Job handler for ``ingest`` jobs."""
        if job.payload.get("deduplicated"):
            return await self._existing_result(job.payload["document_id"])
        return await self.ingest_document(job.payload["document_id"])

    async def handle_embed_job(self, job: Job) -> EmbeddingBatchResult:
        """Job handler for ``embed`` jobs: (re-)embed a document's chunks."""
        chunks = await self._documents.get_chunks(job.payload["document_id"])
        return await self._embedder.generate_or_raise(chunks)

    async def ingest_document(self, document_id: str) -> IngestionResult:
        """Chunk, tag and embed a stored document.

        Raises
        ------
        PartialFailure
            When some chunks could not be embedded.  The document keeps its
            chunks and metadata; a retry embeds only the failed chunks.
        """
        start = time.monotonic()
        document = await self._documents.get_document(document_id)
        await self._documents.set_status(document_id, DocumentStatus.PROCESSING)
        log = logger.bind(document_id=document_id, notebook_id=document.notebook_id)

        chunks = self._chunker.chunk(document.id, document.text, notebook_id=document.notebook_id)
        await self._documents.add_chunks(chunks)
        log.info("document_chunked", chunks=len(chunks))

        metadata_outcome, embed_outcome = await asyncio.gather(
            self._tag_document(document),
            self._embedder.generate_or_raise(chunks),
            return_exceptions=True,
        )
        if isinstance(metadata_outcome, BaseException):
            await self._documents.set_status(document_id, DocumentStatus.FAILED)
            raise metadata_outcome
        if isinstance(embed_outcome, BaseException):
            await self._documents.set_status(document_id, DocumentStatus.FAILED)
            log.warning("document_embedding_failed", error=str(embed_outcome))
            raise embed_outcome

        await self._documents.set_status(document_id, DocumentStatus.COMPLETED)
        result = IngestionResult(
            document_id=document.id,
            notebook_id=document.notebook_id,
            chunks_created=len(chunks),
            chunks_embedded=len(embed_outcome.embedded_ids),
            chunks_skipped=len(embed_outcome.skipped_ids),
            metadata_fields=sum(1 for v in metadata_outcome.values.values() if v is not None),
            metadata_warnings=metadata_outcome.warnings,
            ingestion_time=round(time.monotonic() - start, 3),
        )
        log.info(
            "document_ingested",
            chunks=result.chunks_created,
            embedded=result.chunks_embedded,
            skipped=result.chunks_skipped,
            metadata_warnings=len(result.metadata_warnings),
            elapsed=result.ingestion_time,
        )
        return result

    # ------------------------------------------------------------------
    # Documents and schemas
    # ------------------------------------------------------------------

    async def list_documents(self, notebook_id: str) -> list[Document]:
        return await self._documents.list_documents(notebook_id)

    async def get_document(self, document_id: str) -> Document:
        return await self._documents.get_document(document_id)

    async def delete_document(self, document_id: str) -> int:
        """Delete a document, its embeddings and its chunks.

        Embeddings are removed first so no vector outlives its chunk.
        Returns the number of chunks removed.
        """
        await self._documents.get_document(document_id)
        embeddings = await self._vector_store.delete_by_document(document_id)
        chunks = await self._documents.delete_document(document_id)
        logger.info(
            "document_removed",
            document_id=document_id,
            chunks=chunks,
            embeddings=embeddings,
        )
        return chunks

    async def set_metadata_schema(
        self,
        notebook_id: str,
        fields: list[MetadataField],
    ) -> MetadataSchema:
        """Validate and store a notebook's metadata schema.

        Raises
        ------
        ValidationError
            For duplicate field names.
        """
        seen: set[str] = set()
        for spec in fields:
            if spec.name in seen:
                raise ValidationError(message=f"Duplicate metadata field {spec.name!r}")
            seen.add(spec.name)
        schema = MetadataSchema(notebook_id=notebook_id, fields=fields)
        await self._documents.set_metadata_schema(schema)
        return schema

    async def get_metadata_schema(self, notebook_id: str) -> MetadataSchema:
        return await self._documents.get_metadata_schema(notebook_id)

    async def get_stats(self, notebook_id: str | None = None) -> CorpusStats:
        """Document, chunk and embedding counts for a notebook (or everything)."""
        documents = await self._documents.count_documents(notebook_id)
        chunks = await self._documents.count_chunks(notebook_id)
        embeddings = await self._vector_store.count(notebook_id)
        return CorpusStats(
            total_documents=documents,
            total_chunks=chunks,
            total_embeddings=embeddings,
            embedding_models=[self._embedder.model_label],
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _tag_document(self, document: Document) -> ExtractedMetadata:
        if document.metadata_extracted:
            return ExtractedMetadata(
                values=dict(document.metadata),
                confidence=dict(document.metadata_confidence),
                warnings=list(document.metadata_warnings),
            )
        schema = await self._documents.get_metadata_schema(document.notebook_id)
        extracted = await self._metadata_extractor.extract(document.text, schema)
        await self._documents.update_metadata(
            document.id,
            extracted.values,
            extracted.confidence,
            extracted.warnings,
        )
        if extracted.warnings:
            logger.info(
                "document_metadata_warnings",
                document_id=document.id,
                warnings=extracted.warnings,
            )
        return extracted

    async def _existing_result(self, document_id: str) -> IngestionResult:
        document = await self._documents.get_document(document_id)
        chunks = await self._documents.get_chunks(document_id)
        return IngestionResult(
            document_id=document.id,
            notebook_id=document.notebook_id,
            chunks_created=0,
            chunks_skipped=len(chunks),
            metadata_fields=sum(1 for v in document.metadata.values() if v is not None),
            metadata_warnings=document.metadata_warnings,
            deduplicated=True,
        )

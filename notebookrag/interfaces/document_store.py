"""Abstract base class for document, chunk and metadata-schema persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod

from notebookrag.models.document import Chunk, Document, DocumentStatus, MetadataSchema


# Concrete implementation: SQLiteDocumentStore (notebookrag/providers/storage/)
class IDocumentStore(ABC):
    """Contract for storing documents and the chunks derived from them.

    :meth:`add_chunks` makes the given chunks the document's chunk set:
    rows that already exist are left untouched, so re-running chunking with
    the same configuration is harmless, and rows no longer produced are
    removed.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create backing tables if needed."""

    @abstractmethod
    async def add_document(self, document: Document) -> Document:
        """Insert a new document."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Document:
        """Return a document.

        Raises
        ------
        notebookrag.utils.errors.NotFoundError
            If no document has this id.
        """

    @abstractmethod
    async def find_by_content_hash(self, notebook_id: str, content_hash: str) -> Document | None:
        """Return an existing document in *notebook_id* with identical text, if any."""

    @abstractmethod
    async def list_documents(self, notebook_id: str) -> list[Document]:
        """Documents of a notebook, oldest first."""

    @abstractmethod
    async def update_metadata(
        self,
        document_id: str,
        metadata: dict,
        confidence: dict[str, float],
        warnings: list[str],
    ) -> Document:
        """Write extracted metadata onto a document (once per document)."""

    @abstractmethod
    async def set_status(self, document_id: str, status: DocumentStatus) -> None:
        """Update a document's processing status."""

    @abstractmethod
    async def delete_document(self, document_id: str) -> int:
        """Delete a document and cascade to its chunks; returns chunks removed."""

    @abstractmethod
    async def add_chunks(self, chunks: list[Chunk]) -> int:
        """Store a document's chunks, dropping its stale ones; returns the number inserted."""

    @abstractmethod
    async def get_chunks(self, document_id: str) -> list[Chunk]:
        """Chunks of a document in ordinal order."""

    @abstractmethod
    async def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[Chunk]:
        """Chunks with the given ids; unknown ids are omitted."""

    @abstractmethod
    async def count_documents(self, notebook_id: str | None = None) -> int:
        """Number of stored documents, optionally within one notebook."""

    @abstractmethod
    async def count_chunks(self, notebook_id: str | None = None) -> int:
        """Number of stored chunks, optionally within one notebook."""

    @abstractmethod
    async def get_metadata_schema(self, notebook_id: str) -> MetadataSchema:
        """The notebook's metadata schema (empty when none was set)."""

    @abstractmethod
    async def set_metadata_schema(self, schema: MetadataSchema) -> None:
        """Create or replace a notebook's metadata schema."""

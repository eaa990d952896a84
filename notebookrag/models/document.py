"""Document, chunk and metadata-schema models.

A :class:`Document` is the immutable source artifact uploaded into a
notebook.  Its text is split by :class:`~notebookrag.services.ingestion.
chunker.TextChunker` into :class:`Chunk` records, each a contiguous span of
the document text with character offsets.  Metadata is extracted once per
document against the notebook's :class:`MetadataSchema`.

All models use frozen config; updates go through ``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Metadata schema
# ---------------------------------------------------------------------------
class FieldType(str, Enum):  # noqa: UP042 - StrEnum requires Python 3.11+
    """Value types supported by metadata schema fields."""

    TEXT = "text"
    DATE = "date"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"


class MetadataField(BaseModel):
    """One named, typed field of a notebook's metadata schema."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Key written into Document.metadata.")
    field_type: FieldType = Field(default=FieldType.TEXT)
    required: bool = Field(default=False)
    allowed_values: list[str] | None = Field(
        default=None,
        description="Optional enumeration; values outside it are nulled.",
    )
    description: str = Field(default="", description="Hint passed to the extraction prompt.")
    category: str = Field(default="general", description="Grouping label, e.g. 'planning'.")


class MetadataSchema(BaseModel):
    """Ordered list of metadata fields for a notebook."""

    model_config = ConfigDict(frozen=True)

    notebook_id: str = ""
    fields: list[MetadataField] = Field(default_factory=list)

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------
class DocumentStatus(str, Enum):  # noqa: UP042
    """Processing status of an uploaded document."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(BaseModel):
    """An uploaded source document and its extracted metadata."""

    model_config = ConfigDict(frozen=True)

    id: str
    notebook_id: str
    filename: str = ""
    content_type: str = "text/plain"
    content_hash: str = Field(default="", description="sha256 of the normalized text.")
    text: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    metadata_confidence: dict[str, float] = Field(default_factory=dict)
    metadata_warnings: list[str] = Field(default_factory=list)
    metadata_extracted: bool = Field(
        default=False,
        description="True once the metadata extractor has written this document.",
    )
    status: DocumentStatus = DocumentStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Chunk
# ---------------------------------------------------------------------------
class ChunkType(str, Enum):  # noqa: UP042
    """Structural kind of the block a chunk starts in."""

    TEXT = "text"
    TABLE = "table"
    LIST = "list"


class Chunk(BaseModel):
    """A contiguous span of a document's text.

    ``start_offset``/``end_offset`` index into the parent document's
    normalized text, so ``document.text[start_offset:end_offset] == text``.
    The id is derived from (document_id, ordinal, content_hash) so that
    re-chunking the same document produces the same ids.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    notebook_id: str = ""
    ordinal: int = Field(ge=0)
    text: str
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    section_label: str | None = None
    chunk_type: ChunkType = ChunkType.TEXT
    content_hash: str = ""

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset

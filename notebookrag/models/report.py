"""Report template and generation models.

A :class:`ReportTemplate` is an ordered list of :class:`SectionSpec`, each
optionally carrying subsections.  Starting a run flattens the template into
:class:`ReportSection` rows ordered by ``section_order``: a top-level
section gets ``order * 10`` and its subsections ``order * 10 + i + 1``.
Every section is generated, stored and retried independently.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from notebookrag.models.document import utc_now
from notebookrag.models.job import JobError
from notebookrag.models.rag import Citation


class SectionSpec(BaseModel):
    """One section of a report template."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    order: int = Field(default=0, ge=0)
    query_template: str | None = Field(
        default=None,
        description=(
            "str.format template for the retrieval query.  Placeholders: "
            "{topic}, {address}, {additional_context}, {section}."
        ),
    )
    instructions: str = Field(default="", description="Generation instructions for this section.")
    subsections: list[SectionSpec] = Field(default_factory=list)


class ReportTemplate(BaseModel):
    """An ordered set of section specifications."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    sections: list[SectionSpec] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class ReportStatus(str, Enum):  # noqa: UP042 - StrEnum requires Python 3.11+
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class SectionStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReportSection(BaseModel):
    """The result of generating one section of a report run."""

    model_config = ConfigDict(frozen=True)

    id: str
    generation_id: str
    name: str
    parent_name: str | None = None
    section_order: int
    query: str
    instructions: str = ""
    status: SectionStatus = SectionStatus.PENDING
    content: str | None = None
    word_count: int = 0
    citations: list[Citation] = Field(default_factory=list)
    error: JobError | None = None
    job_id: str | None = None
    completed_at: datetime | None = None

    @property
    def is_subsection(self) -> bool:
        return self.parent_name is not None


class ReportGeneration(BaseModel):
    """One run of a template against a notebook."""

    model_config = ConfigDict(frozen=True)

    id: str
    notebook_id: str
    template_id: str
    topic: str
    address: str | None = None
    additional_context: str | None = None
    status: ReportStatus = ReportStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    content: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class ReportView(BaseModel):
    """A generation together with its ordered sections."""

    model_config = ConfigDict(frozen=True)

    generation: ReportGeneration
    sections: list[ReportSection] = Field(default_factory=list)

    @property
    def failed_sections(self) -> list[ReportSection]:
        return [s for s in self.sections if s.status == SectionStatus.FAILED]

"""Abstract base class for report template and generation persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod

from notebookrag.models.report import ReportGeneration, ReportSection, ReportTemplate


# Concrete implementation: SQLiteReportStore (notebookrag/providers/storage/)
class IReportStore(ABC):
    """Contract for report templates, runs and their sections."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create backing tables if needed."""

    @abstractmethod
    async def save_template(self, template: ReportTemplate) -> ReportTemplate:
        """Insert a template.  Templates are never updated in place."""

    @abstractmethod
    async def get_template(self, template_id: str) -> ReportTemplate:
        """Return a template or raise ``NotFoundError``."""

    @abstractmethod
    async def list_templates(self) -> list[ReportTemplate]:
        """All templates, oldest first."""

    @abstractmethod
    async def create_generation(
        self,
        generation: ReportGeneration,
        sections: list[ReportSection],
    ) -> None:
        """Insert a run together with its flattened sections."""

    @abstractmethod
    async def get_generation(self, generation_id: str) -> ReportGeneration:
        """Return a run or raise ``NotFoundError``."""

    @abstractmethod
    async def update_generation(self, generation: ReportGeneration) -> None:
        """Overwrite status, progress, content and completion time of a run."""

    @abstractmethod
    async def get_sections(self, generation_id: str) -> list[ReportSection]:
        """Sections of a run in ``section_order``."""

    @abstractmethod
    async def get_section(self, section_id: str) -> ReportSection:
        """Return a section or raise ``NotFoundError``."""

    @abstractmethod
    async def update_section(self, section: ReportSection) -> None:
        """Overwrite the mutable fields of one section."""

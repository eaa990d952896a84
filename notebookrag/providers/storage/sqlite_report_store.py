"""SQLite-backed report template and generation store (aiosqlite)."""

from __future__ import annotations

import structlog

from notebookrag.interfaces.report_store import IReportStore
from notebookrag.models.job import JobError
from notebookrag.models.rag import Citation
from notebookrag.models.report import (
    ReportGeneration,
    ReportSection,
    ReportStatus,
    ReportTemplate,
    SectionSpec,
    SectionStatus,
)
from notebookrag.providers.storage.sqlite_base import (
    SQLiteStoreBase,
    connect,
    dumps,
    from_iso,
    loads,
    to_iso,
)
from notebookrag.utils.errors import NotFoundError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TEMPLATES_SQL = """\
CREATE TABLE IF NOT EXISTS report_templates (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL,
    description  TEXT NOT NULL DEFAULT '',
    sections     TEXT NOT NULL,
    created_at   TEXT NOT NULL
);
"""

_CREATE_GENERATIONS_SQL = """\
CREATE TABLE IF NOT EXISTS report_generations (
    id                  TEXT PRIMARY KEY,
    notebook_id         TEXT NOT NULL,
    template_id         TEXT NOT NULL REFERENCES report_templates(id),
    topic               TEXT NOT NULL,
    address             TEXT,
    additional_context  TEXT,
    status              TEXT NOT NULL,
    progress            INTEGER NOT NULL DEFAULT 0,
    content             TEXT,
    created_at          TEXT NOT NULL,
    completed_at        TEXT
);
"""

_CREATE_SECTIONS_SQL = """\
CREATE TABLE IF NOT EXISTS report_sections (
    id             TEXT PRIMARY KEY,
    generation_id  TEXT NOT NULL REFERENCES report_generations(id) ON DELETE CASCADE,
    name           TEXT NOT NULL,
    parent_name    TEXT,
    section_order  INTEGER NOT NULL,
    query          TEXT NOT NULL,
    instructions   TEXT NOT NULL DEFAULT '',
    status         TEXT NOT NULL,
    content        TEXT,
    word_count     INTEGER NOT NULL DEFAULT 0,
    citations      TEXT NOT NULL DEFAULT '[]',
    error          TEXT,
    job_id         TEXT,
    completed_at   TEXT
);
"""

_CREATE_INDICES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_sections_generation ON report_sections(generation_id, section_order);",
    "CREATE INDEX IF NOT EXISTS idx_generations_notebook ON report_generations(notebook_id);",
)

_INSERT_SECTION_SQL = """\
INSERT INTO report_sections (id, generation_id, name, parent_name, section_order, query,
                             instructions, status, content, word_count, citations, error,
                             job_id, completed_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPDATE_SECTION_SQL = """\
UPDATE report_sections
SET status = ?, content = ?, word_count = ?, citations = ?, error = ?, job_id = ?,
    completed_at = ?
WHERE id = ?;
"""

_UPDATE_GENERATION_SQL = """\
UPDATE report_generations
SET status = ?, progress = ?, content = ?, completed_at = ?
WHERE id = ?;
"""


class SQLiteReportStore(SQLiteStoreBase, IReportStore):
    """Templates, runs and per-section results."""

    _SCHEMA = (_CREATE_TEMPLATES_SQL, _CREATE_GENERATIONS_SQL, _CREATE_SECTIONS_SQL, *_CREATE_INDICES_SQL)

    async def initialize(self) -> None:
        await self._create_schema()
        logger.info("report_store_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def save_template(self, template: ReportTemplate) -> ReportTemplate:
        sections = [s.model_dump(mode="json") for s in template.sections]
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO report_templates (id, name, description, sections, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (template.id, template.name, template.description, dumps(sections), to_iso(template.created_at)),
            )
            await db.commit()
        logger.info("report_template_saved", template_id=template.id, sections=len(sections))
        return template

    async def get_template(self, template_id: str) -> ReportTemplate:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM report_templates WHERE id = ?", (template_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Report template {template_id} not found", provider_name="sqlite")
        return _row_to_template(row)

    async def list_templates(self) -> list[ReportTemplate]:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM report_templates ORDER BY created_at ASC")
            rows = await cursor.fetchall()
        return [_row_to_template(r) for r in rows]

    # ------------------------------------------------------------------
    # Generations and sections
    # ------------------------------------------------------------------

    async def create_generation(
        self,
        generation: ReportGeneration,
        sections: list[ReportSection],
    ) -> None:
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO report_generations (id, notebook_id, template_id, topic, address, "
                "additional_context, status, progress, content, created_at, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    generation.id,
                    generation.notebook_id,
                    generation.template_id,
                    generation.topic,
                    generation.address,
                    generation.additional_context,
                    generation.status.value,
                    generation.progress,
                    generation.content,
                    to_iso(generation.created_at),
                    to_iso(generation.completed_at),
                ),
            )
            await db.executemany(_INSERT_SECTION_SQL, [_section_row(s) for s in sections])
            await db.commit()
        logger.info("report_generation_created", generation_id=generation.id, sections=len(sections))

    async def get_generation(self, generation_id: str) -> ReportGeneration:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM report_generations WHERE id = ?", (generation_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Report generation {generation_id} not found", provider_name="sqlite")
        return ReportGeneration(
            id=row["id"],
            notebook_id=row["notebook_id"],
            template_id=row["template_id"],
            topic=row["topic"],
            address=row["address"],
            additional_context=row["additional_context"],
            status=ReportStatus(row["status"]),
            progress=row["progress"],
            content=row["content"],
            created_at=from_iso(row["created_at"]),
            completed_at=from_iso(row["completed_at"]),
        )

    async def update_generation(self, generation: ReportGeneration) -> None:
        async with connect(self._db_path) as db:
            await db.execute(
                _UPDATE_GENERATION_SQL,
                (
                    generation.status.value,
                    generation.progress,
                    generation.content,
                    to_iso(generation.completed_at),
                    generation.id,
                ),
            )
            await db.commit()

    async def get_sections(self, generation_id: str) -> list[ReportSection]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM report_sections WHERE generation_id = ? ORDER BY section_order ASC",
                (generation_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_section(r) for r in rows]

    async def get_section(self, section_id: str) -> ReportSection:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM report_sections WHERE id = ?", (section_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Report section {section_id} not found", provider_name="sqlite")
        return _row_to_section(row)

    async def update_section(self, section: ReportSection) -> None:
        async with connect(self._db_path) as db:
            await db.execute(
                _UPDATE_SECTION_SQL,
                (
                    section.status.value,
                    section.content,
                    section.word_count,
                    dumps([c.model_dump(mode="json") for c in section.citations]),
                    dumps(section.error.model_dump(mode="json")) if section.error else None,
                    section.job_id,
                    to_iso(section.completed_at),
                    section.id,
                ),
            )
            await db.commit()


def _section_row(section: ReportSection) -> tuple:
    return (
        section.id,
        section.generation_id,
        section.name,
        section.parent_name,
        section.section_order,
        section.query,
        section.instructions,
        section.status.value,
        section.content,
        section.word_count,
        dumps([c.model_dump(mode="json") for c in section.citations]),
        dumps(section.error.model_dump(mode="json")) if section.error else None,
        section.job_id,
        to_iso(section.completed_at),
    )


def _row_to_template(row) -> ReportTemplate:
    return ReportTemplate(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        sections=[SectionSpec.model_validate(s) for s in loads(row["sections"], [])],
        created_at=from_iso(row["created_at"]),
    )


def _row_to_section(row) -> ReportSection:
    error = loads(row["error"])
    return ReportSection(
        id=row["id"],
        generation_id=row["generation_id"],
        name=row["name"],
        parent_name=row["parent_name"],
        section_order=row["section_order"],
        query=row["query"],
        instructions=row["instructions"],
        status=SectionStatus(row["status"]),
        content=row["content"],
        word_count=row["word_count"],
        citations=[Citation.model_validate(c) for c in loads(row["citations"], [])],
        error=JobError.model_validate(error) if error else None,
        job_id=row["job_id"],
        completed_at=from_iso(row["completed_at"]),
    )

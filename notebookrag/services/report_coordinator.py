"""Templated, section-by-section report generation.

A report run turns a :class:`~notebookrag.models.report.ReportTemplate` into
independently generated sections:

1. **Flatten** -- sections and their subsections become
   :class:`ReportSection` rows ordered by ``section_order`` (``order * 10``
   for a section, ``order * 10 + i + 1`` for its i-th subsection).
2. **Query** -- each row gets a retrieval query built from the topic,
   address and additional context, or from the section's ``query_template``.
3. **Generate** -- each section retrieves its top chunks and asks the LLM
   for grounded prose, storing content, word count and citations.
4. **Finalize** -- after every section update the run's progress and
   status are recomputed; once all sections are done the markdown report
   is assembled in ``section_order``.

A failing section never takes the run down with it: the error is stored on
the section, the run ends ``partial`` (or ``failed`` when every section
failed), and the section can be retried on its own.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

import structlog

from notebookrag.models.document import utc_now
from notebookrag.models.job import Job, JobError, JobKind
from notebookrag.models.report import (
    ReportGeneration,
    ReportSection,
    ReportStatus,
    ReportTemplate,
    ReportView,
    SectionSpec,
    SectionStatus,
)
from notebookrag.services.retriever import format_context
from notebookrag.utils.concurrency import get_throttle
from notebookrag.utils.errors import ProviderError, ValidationError

if TYPE_CHECKING:
    from notebookrag.interfaces.llm_provider import ILLMProvider
    from notebookrag.interfaces.report_store import IReportStore
    from notebookrag.pipeline.events import JobEvents
    from notebookrag.pipeline.job_orchestrator import JobOrchestrator
    from notebookrag.services.retriever import VectorRetriever

logger = structlog.get_logger(logger_name=__name__)

_MAX_SUBSECTIONS = 9

_SECTION_SYSTEM_PROMPT = (
    "You are a professional report writer. You write one section of a larger "
    "report at a time, grounded in the numbered context passages you are "
    "given. Cite passages inline as [n]. Do not invent facts that are not in "
    "the context. Write in clear, professional prose using markdown where "
    "helpful, without repeating the section heading."
)

_SECTION_USER_PROMPT = """\
Based on the following context from the notebook's documents, write a \
comprehensive section for "{title}".

Context:
{context}

Query: {query}
{instructions}
Please provide a detailed, professional response that directly addresses the \
query using the provided context. If the context doesn't contain relevant \
information, please state that clearly."""

_NO_CONTEXT = (
    "(No passages in the notebook met the relevance threshold for this query. "
    "The available documents do not contain sufficient information for this "
    "section; say so rather than guessing.)"
)


class ReportCoordinator:
    """Creates report runs and generates, retries and assembles their sections.

    Parameters
    ----------
    report_store:
        Templates, runs and section rows.
    retriever:
        Scoped retrieval for each section's query.
    llm:
        Text generation provider.
    orchestrator:
        Job orchestrator used by :meth:`start` to run sections as
        ``report_section`` jobs.  Optional for in-process :meth:`generate`.
    events:
        Optional event hub for ``section_completed`` events.
    section_top_k:
        Chunks retrieved per section.
    threshold:
        Retrieval score threshold; ``None`` uses the retriever's default.
    """

    def __init__(
        self,
        report_store: IReportStore,
        retriever: VectorRetriever,
        llm: ILLMProvider,
        orchestrator: JobOrchestrator | None = None,
        events: JobEvents | None = None,
        section_top_k: int = 5,
        threshold: float | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> None:
        self._store = report_store
        self._retriever = retriever
        self._llm = llm
        self._orchestrator = orchestrator
        self._events = events
        self._section_top_k = section_top_k
        self._threshold = threshold
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._finalize_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def create_template(
        self,
        name: str,
        sections: list[SectionSpec],
        description: str = "",
    ) -> ReportTemplate:
        """Validate and store a new template.

        Sections whose ``order`` values collide are renumbered by position.

        Raises
        ------
        ValidationError
            For an empty template, too many subsections, or a
            ``query_template`` with unknown placeholders.
        """
        if not name.strip():
            raise ValidationError(message="Template name is required")
        if not sections:
            raise ValidationError(message="A report template needs at least one section")

        orders = [s.order for s in sections]
        if len(set(orders)) != len(orders):
            sections = [s.model_copy(update={"order": i + 1}) for i, s in enumerate(sections)]

        for spec in sections:
            if len(spec.subsections) > _MAX_SUBSECTIONS:
                raise ValidationError(
                    message=f"Section {spec.name!r} has more than {_MAX_SUBSECTIONS} subsections"
                )
            for s in (spec, *spec.subsections):
                _check_query_template(s)

        template = ReportTemplate(
            id=str(uuid.uuid4()),
            name=name.strip(),
            description=description,
            sections=sections,
        )
        return await self._store.save_template(template)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start(
        self,
        template_id: str,
        notebook_id: str,
        topic: str,
        address: str | None = None,
        additional_context: str | None = None,
        parallel: bool = False,
    ) -> ReportView:
        """Create a run and enqueue its sections as ``report_section`` jobs.

        Sequential runs enqueue the first section only; each finished
        section enqueues the next, so sections run in template order.
        """
        if self._orchestrator is None:
            raise ValidationError(message="Background report generation requires a job orchestrator")
        generation, sections = await self._create_run(
            template_id, notebook_id, topic, address, additional_context
        )
        to_submit = sections if parallel else sections[:1]
        for section in to_submit:
            await self._submit_section(section, chain=not parallel)
        logger.info(
            "report_started",
            generation_id=generation.id,
            sections=len(sections),
            parallel=parallel,
        )
        return await self.get_report(generation.id)

    async def generate(
        self,
        template_id: str,
        notebook_id: str,
        topic: str,
        address: str | None = None,
        additional_context: str | None = None,
        parallel: bool = False,
    ) -> ReportView:
        """Create a run and generate every section in-process.

        Never raises for section failures; inspect the returned view's
        ``generation.status`` and ``failed_sections``.
        """
        generation, sections = await self._create_run(
            template_id, notebook_id, topic, address, additional_context
        )
        if parallel:
            await asyncio.gather(*(self.run_section(s.id) for s in sections))
        else:
            for section in sections:
                await self.run_section(section.id)
        view = await self.get_report(generation.id)
        logger.info(
            "report_generated",
            generation_id=generation.id,
            status=view.generation.status.value,
            failed_sections=len(view.failed_sections),
        )
        return view

    async def get_report(self, generation_id: str) -> ReportView:
        generation = await self._store.get_generation(generation_id)
        sections = await self._store.get_sections(generation_id)
        return ReportView(generation=generation, sections=sections)

    async def retry_section(self, section_id: str, background: bool = False) -> ReportView:
        """Reset one section and run it again, then re-finalize its run.

        With ``background=True`` (and an orchestrator) the section is
        enqueued as a job instead of running inline.
        """
        section = await self._store.get_section(section_id)
        reset = section.model_copy(
            update={
                "status": SectionStatus.PENDING,
                "content": None,
                "word_count": 0,
                "citations": [],
                "error": None,
                "completed_at": None,
            }
        )
        await self._store.update_section(reset)
        generation = await self._store.get_generation(section.generation_id)
        await self._store.update_generation(
            generation.model_copy(
                update={"status": ReportStatus.RUNNING, "content": None, "completed_at": None}
            )
        )
        logger.info("report_section_retry", section_id=section_id, generation_id=generation.id)

        if background and self._orchestrator is not None:
            await self._submit_section(reset, chain=False)
        else:
            await self.run_section(section_id)
        return await self.get_report(generation.id)

    # ------------------------------------------------------------------
    # Section execution
    # ------------------------------------------------------------------

    async def handle_section_job(self, job: Job) -> dict[str, Any]:
        """Job handler for ``report_section`` jobs."""
        section = await self.run_section(job.payload["section_id"])
        if job.payload.get("chain"):
            await self._submit_next(section.generation_id)
        return {
            "section_id": section.id,
            "generation_id": section.generation_id,
            "status": section.status.value,
        }

    async def handle_section_stopped(self, job: Job) -> None:
        """Terminal-failure hook for ``report_section`` jobs.

        Called once a section job is ``cancelled`` or ``failed_final``, so
        its handler will not run (again).  A section still ``pending`` or
        ``running`` is marked failed with the job's error, the run is
        re-finalized, and a sequential run moves on to its next section.
        """
        section = await self._store.get_section(job.payload["section_id"])
        if section.job_id != job.id:
            # The section belongs to another job, a later retry for example.
            return
        if section.status not in (SectionStatus.SUCCEEDED, SectionStatus.FAILED):
            error = job.error or JobError(
                kind="JobFailed", message=f"Section job ended {job.state.value}"
            )
            section = self._failed(section, error)
            await self._store.update_section(section)
            generation = await self._finalize(section.generation_id)
            await self._section_completed(section, generation)
            logger.warning(
                "report_section_job_stopped",
                generation_id=section.generation_id,
                section=section.name,
                job_state=job.state.value,
                error_kind=error.kind,
            )
        if job.payload.get("chain"):
            await self._submit_next(section.generation_id)

    async def run_section(self, section_id: str) -> ReportSection:
        """Generate one section and store the outcome.

        Errors are recorded on the section rather than raised.  Only task
        cancellation propagates, after the section is marked failed.
        """
        section = await self._store.get_section(section_id)
        generation = await self._store.get_generation(section.generation_id)
        section = section.model_copy(
            update={"status": SectionStatus.RUNNING, "error": None, "content": None}
        )
        await self._store.update_section(section)
        if generation.status == ReportStatus.PENDING:
            generation = generation.model_copy(update={"status": ReportStatus.RUNNING})
            await self._store.update_generation(generation)

        log = logger.bind(generation_id=generation.id, section=section.name)
        try:
            section = await self._generate_section(section, generation)
            log.info("report_section_succeeded", word_count=section.word_count, citations=len(section.citations))
        except asyncio.CancelledError:
            section = self._failed(section, JobError(kind="Cancelled", message="Section generation cancelled"))
            await self._store.update_section(section)
            await self._finalize(generation.id)
            raise
        except Exception as exc:
            log.warning(
                "report_section_failed",
                error_kind=type(exc).__name__,
                error=str(exc),
            )
            section = self._failed(section, JobError.from_exception(exc))

        await self._store.update_section(section)
        generation = await self._finalize(generation.id)
        await self._section_completed(section, generation)
        return section

    async def _section_completed(self, section: ReportSection, generation: ReportGeneration) -> None:
        if self._events is None:
            return
        await self._events.section_completed(
            generation.id,
            section_id=section.id,
            name=section.name,
            status=section.status.value,
            progress=generation.progress,
            report_status=generation.status.value,
        )

    async def _generate_section(
        self,
        section: ReportSection,
        generation: ReportGeneration,
    ) -> ReportSection:
        chunks = await self._retriever.retrieve(
            query=section.query,
            notebook_id=generation.notebook_id,
            top_k=self._section_top_k,
            threshold=self._threshold,
        )
        title = f"{section.parent_name} - {section.name}" if section.parent_name else section.name
        instructions = f"\nInstructions: {section.instructions}\n" if section.instructions else ""
        user_prompt = _SECTION_USER_PROMPT.format(
            title=title,
            context=format_context(chunks) if chunks else _NO_CONTEXT,
            query=section.query,
            instructions=instructions,
        )
        throttle = get_throttle(self._llm.get_provider_name())
        content = await throttle.call(
            lambda: self._llm.complete(
                system_prompt=_SECTION_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        )
        content = (content or "").strip()
        if not content:
            raise ProviderError(
                message="LLM returned an empty section",
                provider_name=self._llm.get_provider_name(),
            )
        return section.model_copy(
            update={
                "status": SectionStatus.SUCCEEDED,
                "content": content,
                "word_count": len(content.split()),
                "citations": [rc.to_citation() for rc in chunks],
                "error": None,
                "completed_at": utc_now(),
            }
        )

    @staticmethod
    def _failed(section: ReportSection, error: JobError) -> ReportSection:
        return section.model_copy(
            update={
                "status": SectionStatus.FAILED,
                "content": None,
                "word_count": 0,
                "citations": [],
                "error": error,
                "completed_at": utc_now(),
            }
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create_run(
        self,
        template_id: str,
        notebook_id: str,
        topic: str,
        address: str | None,
        additional_context: str | None,
    ) -> tuple[ReportGeneration, list[ReportSection]]:
        if not topic or not topic.strip():
            raise ValidationError(message="A report topic is required")
        template = await self._store.get_template(template_id)
        generation = ReportGeneration(
            id=str(uuid.uuid4()),
            notebook_id=notebook_id,
            template_id=template.id,
            topic=topic.strip(),
            address=address or None,
            additional_context=additional_context or None,
        )
        sections = flatten_template(template, generation)
        if not sections:
            raise ValidationError(message=f"Template {template_id} has no sections")
        await self._store.create_generation(generation, sections)
        return generation, sections

    async def _submit_section(self, section: ReportSection, chain: bool) -> None:
        job = await self._orchestrator.submit(
            JobKind.REPORT_SECTION,
            {"section_id": section.id, "generation_id": section.generation_id, "chain": chain},
        )
        await self._store.update_section(section.model_copy(update={"job_id": job.id}))

    async def _submit_next(self, generation_id: str) -> None:
        for section in await self._store.get_sections(generation_id):
            if section.status == SectionStatus.PENDING and section.job_id is None:
                await self._submit_section(section, chain=True)
                return

    async def _finalize(self, generation_id: str) -> ReportGeneration:
        """Recompute progress and status; assemble content once every section is done."""
        async with self._finalize_lock:
            generation = await self._store.get_generation(generation_id)
            sections = await self._store.get_sections(generation_id)
            done = [s for s in sections if s.status in (SectionStatus.SUCCEEDED, SectionStatus.FAILED)]
            progress = round(len(done) / len(sections) * 100) if sections else 100

            update: dict[str, Any] = {"progress": progress}
            if len(done) == len(sections):
                succeeded = sum(1 for s in sections if s.status == SectionStatus.SUCCEEDED)
                if succeeded == len(sections):
                    status = ReportStatus.SUCCEEDED
                elif succeeded == 0:
                    status = ReportStatus.FAILED
                else:
                    status = ReportStatus.PARTIAL
                update.update(
                    status=status,
                    content=assemble_report(sections),
                    completed_at=utc_now(),
                )
            else:
                update.update(status=ReportStatus.RUNNING, content=None, completed_at=None)

            generation = generation.model_copy(update=update)
            await self._store.update_generation(generation)

        if generation.completed_at is not None:
            logger.info(
                "report_finalized",
                generation_id=generation_id,
                status=generation.status.value,
                sections=len(sections),
            )
        return generation


def build_query(
    spec: SectionSpec,
    topic: str,
    address: str | None = None,
    additional_context: str | None = None,
    parent: SectionSpec | None = None,
) -> str:
    """Retrieval query for a section or subsection."""
    if spec.query_template:
        return spec.query_template.format(
            topic=topic,
            address=address or "",
            additional_context=additional_context or "",
            section=spec.name,
        ).strip()
    if parent is not None:
        query = f"{spec.name} (under {parent.name}) for {topic}"
        if address:
            query += f" at {address}"
        return query
    query = f"{spec.name} for {topic}"
    if address:
        query += f" at {address}"
    if additional_context:
        query += f". Context: {additional_context}"
    return query


def flatten_template(template: ReportTemplate, generation: ReportGeneration) -> list[ReportSection]:
    """Expand a template into section rows in ``section_order``."""
    rows: list[ReportSection] = []
    for spec in sorted(template.sections, key=lambda s: s.order):
        rows.append(
            ReportSection(
                id=str(uuid.uuid4()),
                generation_id=generation.id,
                name=spec.name,
                section_order=spec.order * 10,
                query=build_query(spec, generation.topic, generation.address, generation.additional_context),
                instructions=spec.instructions,
            )
        )
        for i, sub in enumerate(spec.subsections):
            rows.append(
                ReportSection(
                    id=str(uuid.uuid4()),
                    generation_id=generation.id,
                    name=sub.name,
                    parent_name=spec.name,
                    section_order=spec.order * 10 + i + 1,
                    query=build_query(
                        sub,
                        generation.topic,
                        generation.address,
                        generation.additional_context,
                        parent=spec,
                    ),
                    instructions=sub.instructions or spec.instructions,
                )
            )
    return rows


def assemble_report(sections: list[ReportSection]) -> str:
    """Markdown report: ``#`` per section, ``##`` per subsection, in order."""
    parts: list[str] = []
    for section in sorted(sections, key=lambda s: s.section_order):
        heading = "##" if section.is_subsection else "#"
        if section.status == SectionStatus.SUCCEEDED:
            body = section.content or ""
        else:
            reason = section.error.message if section.error else "not generated"
            body = f"_Section failed: {reason}_"
        parts.append(f"{heading} {section.name}\n\n{body}\n")
    return "\n".join(parts)


def _check_query_template(spec: SectionSpec) -> None:
    if not spec.query_template:
        return
    try:
        spec.query_template.format(topic="", address="", additional_context="", section="")
    except (KeyError, IndexError, ValueError) as exc:
        raise ValidationError(
            message=f"Invalid query_template for section {spec.name!r}: {exc}"
        ) from exc

"""Background job orchestrator: persisted state machines run by a worker pool.

Every unit of asynchronous work (ingestion, embedding, report section,
batch search) is a :class:`~notebookrag.models.job.Job` row driven through
its states by compare-and-set transitions on the
:class:`~notebookrag.interfaces.job_store.IJobStore`:

    queued ──claim──→ running ──→ succeeded
                         │  └───→ failed ──backoff──→ queued   (attempts left)
                         │              └──────────→ failed_final
                         ├──────→ failed_final                  (non-retryable)
                         └──────→ cancelled

Workers are asyncio tasks.  Each runs one job at a time: the handler runs
in its own task next to a heartbeat loop, so a cancel request (or loss of
ownership) cancels the handler task and the ``CancelledError`` surfaces
inside whatever provider call it is awaiting.  A reaper loop returns jobs
whose heartbeat went quiet (crashed worker) to the queue.  A job with a
pending cancel request is cancelled rather than requeued.

Callers that track work outside the job row register a terminal-failure
hook per kind (:meth:`JobOrchestrator.on_terminal_failure`); it runs once a
job of that kind lands in ``failed_final`` or ``cancelled``.

Exceptions never escape a worker; they are recorded on the job as a
structured :class:`~notebookrag.models.job.JobError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from notebookrag.interfaces.job_store import IJobStore
from notebookrag.models.document import utc_now
from notebookrag.models.job import Job, JobError, JobKind, JobState, JobStatus
from notebookrag.pipeline.events import JobEvents
from notebookrag.utils.errors import NON_RETRYABLE_ERRORS, ConsistencyError, NotebookRAGError
from notebookrag.utils.logging import get_logger

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | BaseModel | None]]
TerminalHook = Callable[[Job], Awaitable[None]]

logger = get_logger(__name__)

_CANCELLED_BY_REQUEST = "cancel"
_OWNERSHIP_LOST = "lost"


class JobOrchestrator:
    """Runs registered job handlers with retry, liveness and cancellation.

    Parameters
    ----------
    job_store:
        Persistence and atomic claim/transition operations.
    events:
        Optional event hub; a ``job_state_changed`` event is published on
        every transition this orchestrator makes.
    worker_count:
        Number of concurrent worker tasks started by :meth:`start`.
    poll_interval:
        Seconds an idle worker sleeps before polling for work again.
    liveness_timeout:
        Seconds without a heartbeat after which a running job is reclaimed.
    heartbeat_interval:
        Seconds between heartbeats of a running job.
    max_attempts:
        Default attempt budget for submitted jobs.
    retry_backoff_base:
        A failed job becomes runnable again after
        ``retry_backoff_base * 2 ** (attempts - 1)`` seconds.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        job_store: IJobStore,
        events: JobEvents | None = None,
        worker_count: int = 4,
        poll_interval: float = 0.5,
        liveness_timeout: float = 300.0,
        heartbeat_interval: float = 30.0,
        max_attempts: int = 3,
        retry_backoff_base: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = job_store
        self._events = events
        self._worker_count = max(1, worker_count)
        self._poll_interval = poll_interval
        self._liveness_timeout = liveness_timeout
        self._heartbeat_interval = heartbeat_interval
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff_base = retry_backoff_base
        self._clock = clock

        self._handlers: dict[JobKind, JobHandler] = {}
        self._terminal_hooks: dict[JobKind, TerminalHook] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._cancel_reasons: dict[str, str] = {}
        self._workers: list[asyncio.Task] = []
        self._reaper: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._instance_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Registration and submission
    # ------------------------------------------------------------------

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        """Register the coroutine that executes jobs of *kind*."""
        self._handlers[kind] = handler
        logger.debug("job_handler_registered", kind=kind.value)

    def on_terminal_failure(self, kind: JobKind, hook: TerminalHook) -> None:
        """Register a coroutine awaited when a job of *kind* ends without success.

        The hook sees the job after it reached ``failed_final`` or
        ``cancelled``, whichever path got it there: a handler error, a
        cancel while queued or running, or a reclaim with no attempts left.
        It is how callers that track work outside the job row (report
        sections, for example) learn that the handler will not run again.
        """
        self._terminal_hooks[kind] = hook

    async def submit(
        self,
        kind: JobKind,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> Job:
        """Persist a new ``queued`` job and wake an idle worker."""
        job = Job(
            id=str(uuid.uuid4()),
            kind=kind,
            payload=payload or {},
            max_attempts=max_attempts or self._max_attempts,
            available_at=self._clock(),
            created_at=self._clock(),
        )
        job = await self._store.create(job)
        await self._publish(job)
        self._wake.set()
        return job

    # ------------------------------------------------------------------
    # Status and cancellation
    # ------------------------------------------------------------------

    async def status(self, job_id: str) -> JobStatus:
        return JobStatus.from_job(await self._store.get(job_id))

    async def get_job(self, job_id: str) -> Job:
        return await self._store.get(job_id)

    async def list_jobs(
        self,
        state: JobState | None = None,
        kind: JobKind | None = None,
        limit: int = 100,
    ) -> list[JobStatus]:
        """Job statuses newest first, optionally filtered by state and kind."""
        jobs = await self._store.list_jobs(state=state, kind=kind, limit=limit)
        return [JobStatus.from_job(j) for j in jobs]

    async def cancel(self, job_id: str) -> JobStatus:
        """Request cancellation of a job.

        A queued job is cancelled immediately.  A running job owned by this
        process has its handler task cancelled; one owned by another process
        is cancelled by that process's heartbeat loop, which watches the
        ``cancel_requested`` flag.  Terminal jobs are returned unchanged.
        """
        job = await self._store.get(job_id)
        if job.state.is_terminal:
            return JobStatus.from_job(job)

        job = await self._store.request_cancel(job_id)
        logger.info("job_cancel_requested", job_id=job_id, state=job.state.value)

        if job.state == JobState.QUEUED:
            with contextlib.suppress(ConsistencyError):
                job = await self._store.transition(
                    job_id,
                    JobState.QUEUED,
                    JobState.CANCELLED,
                    error=_cancel_error(),
                    now=self._clock(),
                )
                await self._publish(job)
            job = await self._store.get(job_id)

        task = self._running.get(job_id)
        if job.state == JobState.RUNNING and task is not None and not task.done():
            self._cancel_reasons[job_id] = _CANCELLED_BY_REQUEST
            task.cancel()
        return JobStatus.from_job(job)

    async def wait_for(
        self,
        job_id: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> JobStatus:
        """Poll until the job reaches a terminal state.

        Raises
        ------
        asyncio.TimeoutError
            If *timeout* elapses first.
        """
        interval = poll_interval if poll_interval is not None else self._poll_interval

        async def _poll() -> JobStatus:
            while True:
                status = await self.status(job_id)
                if status.state.is_terminal:
                    return status
                await asyncio.sleep(interval)

        return await asyncio.wait_for(_poll(), timeout)

    # ------------------------------------------------------------------
    # Worker pool lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker tasks and the reaper loop."""
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"job-worker-{i}")
            for i in range(self._worker_count)
        ]
        self._reaper = asyncio.create_task(self._reaper_loop(), name="job-reaper")
        logger.info("job_workers_started", workers=self._worker_count, instance=self._instance_id)

    async def stop(self) -> None:
        """Stop workers; jobs they were running go back to the queue."""
        self._stopping.set()
        self._wake.set()
        tasks = [*self._workers, *([self._reaper] if self._reaper else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._reaper = None
        logger.info("job_workers_stopped", instance=self._instance_id)

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_once(self, owner: str | None = None) -> Job | None:
        """Claim and run the next runnable job; ``None`` when the queue is idle."""
        owner = owner or f"{self._instance_id}:inline"
        job = await self._store.claim_next(owner, self._clock())
        if job is None:
            return None
        await self._publish(job)
        await self._execute(job, owner)
        return await self._store.get(job.id)

    async def run_until_idle(self, max_jobs: int | None = None) -> int:
        """Run jobs inline until none is runnable; returns how many ran."""
        ran = 0
        while max_jobs is None or ran < max_jobs:
            if await self.run_once() is None:
                break
            ran += 1
        return ran

    async def reap_stale(self) -> list[str]:
        """Reclaim running jobs whose heartbeat is older than the liveness timeout.

        Each reclaim is a compare-and-set on ``state='running' AND
        owner=<stale owner>``, so concurrent reapers reclaim a job once.

        Returns
        -------
        list[str]
            Ids of the jobs this call reclaimed.
        """
        now = self._clock()
        stale = await self._store.find_stale(now - timedelta(seconds=self._liveness_timeout))
        reclaimed: list[str] = []
        for job in stale:
            if job.cancel_requested:
                # A requeued job with a pending cancel would never be claimed again.
                target, error = JobState.CANCELLED, _cancel_error()
            else:
                error = JobError(
                    kind="LivenessTimeout",
                    message=f"No heartbeat from {job.owner} since {job.heartbeat_at}",
                )
                exhausted = job.attempts >= job.max_attempts
                target = JobState.FAILED_FINAL if exhausted else JobState.QUEUED
            try:
                updated = await self._store.transition(
                    job.id,
                    JobState.RUNNING,
                    target,
                    expected_owner=job.owner,
                    error=error,
                    available_at=now,
                    now=now,
                )
            except ConsistencyError:
                logger.debug("job_reclaim_lost_race", job_id=job.id)
                continue
            reclaimed.append(job.id)
            logger.warning(
                "job_reclaimed",
                job_id=job.id,
                previous_owner=job.owner,
                attempts=job.attempts,
                new_state=updated.state.value,
            )
            await self._publish(updated)
        if reclaimed:
            self._wake.set()
        return reclaimed

    async def _execute(self, job: Job, owner: str) -> None:
        handler = self._handlers.get(job.kind)
        if handler is None:
            await self._finish_failed(
                job,
                owner,
                JobError(kind="ValidationError", message=f"No handler registered for {job.kind.value}"),
                retryable=False,
            )
            return

        log = logger.bind(job_id=job.id, kind=job.kind.value, attempt=job.attempts)
        log.info("job_started")
        task = asyncio.create_task(handler(job), name=f"job-{job.id}")
        self._running[job.id] = task
        heartbeat = asyncio.create_task(self._heartbeat_loop(job.id, owner, task))
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self._cancel_reasons.pop(job.id, None)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await self._release(job, owner)
            raise
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._running.pop(job.id, None)

        reason = self._cancel_reasons.pop(job.id, None)
        if task.cancelled():
            if reason == _OWNERSHIP_LOST:
                log.warning("job_abandoned_after_reclaim")
                return
            await self._finish_cancelled(job, owner)
            return

        exc = task.exception()
        if exc is None:
            await self._finish_succeeded(job, owner, task.result())
            return

        retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)
        log.warning(
            "job_attempt_failed",
            error_kind=type(exc).__name__,
            error=str(exc),
            retryable=retryable,
            exc_info=not isinstance(exc, NotebookRAGError),
        )
        await self._finish_failed(job, owner, JobError.from_exception(exc), retryable=retryable)

    async def _heartbeat_loop(self, job_id: str, owner: str, task: asyncio.Task) -> None:
        """Renew liveness while *task* runs; cancel it on cancel request or lost ownership."""
        while not task.done():
            await asyncio.sleep(self._heartbeat_interval)
            try:
                alive = await self._store.heartbeat(job_id, owner, self._clock())
                current = await self._store.get(job_id)
            except Exception as exc:
                logger.warning("job_heartbeat_failed", job_id=job_id, error=str(exc))
                continue
            if not alive:
                logger.warning("job_ownership_lost", job_id=job_id, owner=owner)
                self._cancel_reasons[job_id] = _OWNERSHIP_LOST
                task.cancel()
                return
            if current.cancel_requested:
                self._cancel_reasons[job_id] = _CANCELLED_BY_REQUEST
                task.cancel()
                return

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _finish_succeeded(self, job: Job, owner: str, result: Any) -> None:
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        elif result is not None and not isinstance(result, dict):
            result = {"value": result}
        updated = await self._transition(
            job, JobState.RUNNING, JobState.SUCCEEDED, owner, result=result or {}
        )
        if updated is not None:
            logger.info("job_succeeded", job_id=job.id, kind=job.kind.value, attempts=updated.attempts)

    async def _finish_cancelled(self, job: Job, owner: str) -> None:
        updated = await self._transition(
            job, JobState.RUNNING, JobState.CANCELLED, owner, error=_cancel_error()
        )
        if updated is not None:
            logger.info("job_cancelled", job_id=job.id, kind=job.kind.value)

    async def _finish_failed(self, job: Job, owner: str, error: JobError, retryable: bool) -> None:
        current = await self._store.get(job.id)
        if not retryable or current.attempts >= current.max_attempts:
            updated = await self._transition(
                job, JobState.RUNNING, JobState.FAILED_FINAL, owner, error=error
            )
            if updated is not None:
                logger.error(
                    "job_failed_final",
                    job_id=job.id,
                    kind=job.kind.value,
                    attempts=updated.attempts,
                    error_kind=error.kind,
                    error=error.message,
                )
            return

        if current.cancel_requested:
            # claim_next skips rows flagged for cancel, so a requeue would strand the job.
            await self._finish_cancelled(job, owner)
            return

        failed = await self._transition(job, JobState.RUNNING, JobState.FAILED, owner, error=error)
        if failed is None:
            return
        delay = self._retry_backoff_base * (2 ** max(failed.attempts - 1, 0))
        requeued = await self._transition(
            job,
            JobState.FAILED,
            JobState.QUEUED,
            None,
            available_at=self._clock() + timedelta(seconds=delay),
        )
        if requeued is not None:
            logger.info(
                "job_requeued",
                job_id=job.id,
                attempts=requeued.attempts,
                max_attempts=requeued.max_attempts,
                delay=delay,
            )

    async def _release(self, job: Job, owner: str) -> None:
        """Return a job interrupted by shutdown to the queue, or cancel it if asked to."""
        try:
            current = await self._store.get(job.id)
            cancelled = current.cancel_requested
            updated = await self._store.transition(
                job.id,
                JobState.RUNNING,
                JobState.CANCELLED if cancelled else JobState.QUEUED,
                expected_owner=owner,
                error=_cancel_error() if cancelled else None,
                available_at=self._clock(),
                now=self._clock(),
            )
        except Exception as exc:
            # The reaper returns the job to the queue once its heartbeat expires.
            logger.warning("job_release_failed", job_id=job.id, error=str(exc))
            return
        logger.info("job_released", job_id=job.id, state=updated.state.value)
        await self._publish(updated)

    async def _transition(
        self,
        job: Job,
        expected: JobState,
        new: JobState,
        owner: str | None,
        result: dict[str, Any] | None = None,
        error: JobError | None = None,
        available_at: datetime | None = None,
    ) -> Job | None:
        try:
            updated = await self._store.transition(
                job.id,
                expected,
                new,
                expected_owner=owner,
                result=result,
                error=error,
                available_at=available_at,
                now=self._clock(),
            )
        except ConsistencyError as exc:
            # Reclaimed or cancelled underneath us; the row already moved on.
            logger.warning("job_transition_rejected", job_id=job.id, to_state=new.value, error=str(exc))
            return None
        await self._publish(updated)
        return updated

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        owner = f"{self._instance_id}:{worker_id}"
        while not self._stopping.is_set():
            try:
                job = await self.run_once(owner)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("job_worker_error", worker=owner, error=str(exc), exc_info=True)
                job = None
            if job is None:
                self._wake.clear()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), self._poll_interval)

    async def _reaper_loop(self) -> None:
        interval = max(0.05, min(self._liveness_timeout / 2, 30.0))
        while not self._stopping.is_set():
            try:
                await self.reap_stale()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("job_reaper_error", error=str(exc), exc_info=True)
            await asyncio.sleep(interval)

    async def _publish(self, job: Job) -> None:
        if self._events is not None:
            status = JobStatus.from_job(job)
            await self._events.job_state_changed(
                job.id,
                kind=job.kind.value,
                state=job.state.value,
                attempts=job.attempts,
                error=status.error.model_dump(mode="json") if status.error else None,
            )
        if job.state in (JobState.FAILED_FINAL, JobState.CANCELLED):
            await self._run_terminal_hook(job)

    async def _run_terminal_hook(self, job: Job) -> None:
        hook = self._terminal_hooks.get(job.kind)
        if hook is None:
            return
        try:
            await hook(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "job_terminal_hook_failed",
                job_id=job.id,
                kind=job.kind.value,
                error=str(exc),
                exc_info=True,
            )


def _cancel_error() -> JobError:
    return JobError(kind="Cancelled", message="Cancelled by request")

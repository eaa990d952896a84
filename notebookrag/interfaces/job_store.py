"""Abstract base class for job persistence with compare-and-set semantics.

The job store is the only place job state lives.  Every state change is a
conditional update that succeeds only if the row is still in the expected
state (and, where relevant, still owned by the expected worker).  This is
what guarantees that at most one worker owns a job at any time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from notebookrag.models.job import Job, JobError, JobKind, JobState


# Concrete implementation: SQLiteJobStore (notebookrag/providers/storage/)
class IJobStore(ABC):
    """Contract for persisted job state machines."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create backing tables if needed."""

    @abstractmethod
    async def create(self, job: Job) -> Job:
        """Insert a new job in the ``queued`` state."""

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """Return a job.

        Raises
        ------
        notebookrag.utils.errors.NotFoundError
            If no job has this id.
        """

    @abstractmethod
    async def list_jobs(
        self,
        state: JobState | None = None,
        kind: JobKind | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Jobs newest first, optionally filtered."""

    @abstractmethod
    async def claim_next(self, owner: str, now: datetime) -> Job | None:
        """Atomically claim the oldest runnable ``queued`` job for *owner*.

        A job is runnable when ``available_at <= now`` and no cancel was
        requested.  Claiming sets ``state=running``, ``owner``,
        ``started_at``, ``heartbeat_at`` and increments ``attempts``.

        Returns
        -------
        Job | None
            The claimed job, or ``None`` when nothing is runnable.
        """

    @abstractmethod
    async def heartbeat(self, job_id: str, owner: str, now: datetime) -> bool:
        """Refresh liveness; ``False`` if *owner* no longer owns the job."""

    @abstractmethod
    async def transition(
        self,
        job_id: str,
        expected_state: JobState,
        new_state: JobState,
        expected_owner: str | None = None,
        result: dict[str, Any] | None = None,
        error: JobError | None = None,
        available_at: datetime | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Compare-and-set a state transition.

        Raises
        ------
        notebookrag.utils.errors.ConsistencyError
            If the transition is not allowed, or the job is no longer in
            *expected_state* / owned by *expected_owner*.
        """

    @abstractmethod
    async def request_cancel(self, job_id: str) -> Job:
        """Flag a job for cancellation and return its current row."""

    @abstractmethod
    async def find_stale(self, heartbeat_before: datetime) -> list[Job]:
        """Running jobs whose last heartbeat is older than *heartbeat_before*."""

"""Job state models for the background-job orchestrator.

A :class:`Job` is a persisted state machine:

    queued -> running -> succeeded
                      -> failed -> queued        (automatic re-enqueue)
                               -> failed_final  (attempts exhausted / fatal)
    queued | running -> cancelled

Transitions never go backwards from a terminal state.  The orchestrator
(``notebookrag/pipeline/job_orchestrator.py``) drives transitions through
the compare-and-set operations of
:class:`~notebookrag.interfaces.job_store.IJobStore`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from notebookrag.models.document import utc_now


class JobKind(str, Enum):  # noqa: UP042 - StrEnum requires Python 3.11+
    """Kinds of tracked work."""

    INGEST = "ingest"
    EMBED = "embed"
    REPORT_SECTION = "report_section"
    BATCH_SEARCH = "batch_search"


class JobState(str, Enum):  # noqa: UP042
    """Job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FAILED_FINAL = "failed_final"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED_FINAL, JobState.CANCELLED})

# Legal (from, to) pairs.  RUNNING -> QUEUED is the liveness reclaim.
ALLOWED_TRANSITIONS: frozenset[tuple[JobState, JobState]] = frozenset(
    {
        (JobState.QUEUED, JobState.RUNNING),
        (JobState.QUEUED, JobState.CANCELLED),
        (JobState.RUNNING, JobState.SUCCEEDED),
        (JobState.RUNNING, JobState.FAILED),
        (JobState.RUNNING, JobState.FAILED_FINAL),
        (JobState.RUNNING, JobState.CANCELLED),
        (JobState.RUNNING, JobState.QUEUED),
        (JobState.FAILED, JobState.QUEUED),
        (JobState.FAILED, JobState.FAILED_FINAL),
    }
)


class JobError(BaseModel):
    """Structured error payload recorded on a failed job or report section."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(description="Exception class name, e.g. 'ProviderFatalError'.")
    message: str
    provider: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> JobError:
        from notebookrag.utils.errors import NotebookRAGError, PartialFailure

        details: dict[str, Any] = {}
        provider = None
        message = str(exc)
        if isinstance(exc, NotebookRAGError):
            provider = exc.provider_name
            message = exc.message
        if isinstance(exc, PartialFailure):
            details = {"succeeded": exc.succeeded, "failed": exc.failed}
        return cls(kind=type(exc).__name__, message=message, provider=provider, details=details)


class Job(BaseModel):
    """A persisted unit of asynchronous work."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: JobKind
    state: JobState = JobState.QUEUED
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: JobError | None = None
    last_error: JobError | None = Field(
        default=None,
        description="Error of the most recent failed attempt, kept across re-enqueues.",
    )
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    owner: str | None = None
    cancel_requested: bool = False
    available_at: datetime = Field(default_factory=utc_now)
    heartbeat_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class JobStatus(BaseModel):
    """Status view returned by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    kind: JobKind
    state: JobState
    attempts: int
    max_attempts: int
    result: dict[str, Any] | None = None
    error: JobError | None = None
    last_error: JobError | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobStatus:
        return cls(
            job_id=job.id,
            kind=job.kind,
            state=job.state,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            result=job.result if job.state == JobState.SUCCEEDED else None,
            error=job.error if job.state in (JobState.FAILED, JobState.FAILED_FINAL, JobState.CANCELLED) else None,
            last_error=job.last_error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

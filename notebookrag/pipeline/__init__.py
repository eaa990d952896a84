"""Background job orchestration and event broadcasting for notebook-rag."""

from notebookrag.pipeline.events import ALL_EVENTS, Event, JobEvents
from notebookrag.pipeline.job_orchestrator import JobOrchestrator

__all__ = [
    "ALL_EVENTS",
    "Event",
    "JobEvents",
    "JobOrchestrator",
]

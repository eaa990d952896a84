"""Job and report event broadcasting with callback-based listeners.

The orchestrator publishes a ``job_state_changed`` event whenever a job
moves between states; the report coordinator publishes a
``section_completed`` event whenever a report section finishes.  Consumers
(the WebSocket relay, the CLI's ``--follow`` mode, tests) subscribe by key:

    Orchestrator ──publish()──→ JobEvents ──callback()──→ WebSocket handler
                                                     ──→ (any other listener)

A key is a job id or a report generation id.  Subscribing to ``"*"``
receives every event.  Listener errors are logged and skipped so a broken
listener never blocks the publisher; sync and async callbacks are both
supported.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from notebookrag.models.document import utc_now
from notebookrag.utils.logging import get_logger

ALL_EVENTS = "*"

JOB_STATE_CHANGED = "job_state_changed"
SECTION_COMPLETED = "section_completed"


@dataclass(frozen=True)
class Event:
    """A single published event."""

    type: str
    key: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "key": self.key,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class JobEvents:
    """Publish/subscribe hub for job and section events."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, key: str, callback: Callable) -> None:
        """Register *callback* (sync or async, taking an :class:`Event`) for *key*."""
        listeners = self._listeners.setdefault(key, [])
        if callback not in listeners:
            listeners.append(callback)
            self._logger.debug("listener_registered", key=key, total_listeners=len(listeners))

    def unsubscribe(self, key: str, callback: Callable) -> None:
        listeners = self._listeners.get(key, [])
        if callback in listeners:
            listeners.remove(callback)
            self._logger.debug("listener_unregistered", key=key, remaining_listeners=len(listeners))
        if not listeners:
            self._listeners.pop(key, None)

    async def publish(self, event_type: str, key: str, **data: Any) -> Event:
        """Build an :class:`Event` and deliver it to the key's and global listeners."""
        event = Event(type=event_type, key=key, data=data)
        self._logger.debug("event_published", type=event_type, key=key)
        await self._notify(event)
        return event

    async def job_state_changed(self, job_id: str, **data: Any) -> Event:
        return await self.publish(JOB_STATE_CHANGED, job_id, **data)

    async def section_completed(self, generation_id: str, **data: Any) -> Event:
        return await self.publish(SECTION_COMPLETED, generation_id, **data)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify(self, event: Event) -> None:
        callbacks = [*self._listeners.get(event.key, []), *self._listeners.get(ALL_EVENTS, [])]
        for callback in callbacks:
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    key=event.key,
                    event_type=event.type,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )

"""WebSocket endpoint relaying job events in real time.

A client connects to ``/ws/jobs/{job_id}`` and receives:

    1. the job's current status snapshot, immediately;
    2. every ``job_state_changed`` event for the job as it happens;
    3. for ``report_section`` jobs, the ``section_completed`` events of the
       job's report run.

The connection closes itself once the job reaches a terminal state.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from notebookrag.models.job import JobKind, JobState
from notebookrag.pipeline.events import Event, JobEvents
from notebookrag.pipeline.job_orchestrator import JobOrchestrator
from notebookrag.utils.errors import NotFoundError
from notebookrag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


async def websocket_job_events(websocket: WebSocket, job_id: str) -> None:
    """Stream a job's events to the client until the job finishes or the client leaves."""
    orchestrator: JobOrchestrator = websocket.app.state.orchestrator
    events: JobEvents = websocket.app.state.events

    await websocket.accept()
    try:
        status = await orchestrator.status(job_id)
    except NotFoundError as exc:
        await websocket.send_json({"type": "error", "detail": exc.message})
        await websocket.close(code=4404)
        return
    _logger.info("websocket_connected", job_id=job_id)

    queue: asyncio.Queue[Event] = asyncio.Queue()
    keys = [job_id]
    if status.kind == JobKind.REPORT_SECTION:
        job = await orchestrator.get_job(job_id)
        generation_id = job.payload.get("generation_id")
        if generation_id:
            keys.append(generation_id)

    def _on_event(event: Event) -> None:
        queue.put_nowait(event)

    for key in keys:
        events.subscribe(key, _on_event)

    try:
        await websocket.send_json({"type": "snapshot", "data": status.model_dump(mode="json")})
        if status.state.is_terminal:
            await websocket.close()
            return
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
            state = event.data.get("state")
            if event.key == job_id and state and JobState(state).is_terminal:
                await websocket.close()
                return
    except WebSocketDisconnect:
        _logger.info("websocket_disconnected", job_id=job_id)
    finally:
        for key in keys:
            events.unsubscribe(key, _on_event)
        _logger.debug("websocket_listener_cleaned_up", job_id=job_id)

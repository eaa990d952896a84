"""Unit tests for JobEvents publish/subscribe."""

from __future__ import annotations

import pytest

from notebookrag.pipeline.events import (
    ALL_EVENTS,
    JOB_STATE_CHANGED,
    SECTION_COMPLETED,
    Event,
    JobEvents,
)


class TestJobEvents:
    @pytest.mark.asyncio
    async def test_keyed_and_global_listeners(self) -> None:
        events = JobEvents()
        keyed: list[Event] = []
        everything: list[Event] = []
        events.subscribe("job-1", keyed.append)
        events.subscribe(ALL_EVENTS, everything.append)

        await events.job_state_changed("job-1", state="running")
        await events.job_state_changed("job-2", state="queued")

        assert [e.key for e in keyed] == ["job-1"]
        assert [e.key for e in everything] == ["job-1", "job-2"]
        assert keyed[0].type == JOB_STATE_CHANGED
        assert keyed[0].data == {"state": "running"}

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self) -> None:
        events = JobEvents()
        seen: list[str] = []

        async def _listener(event: Event) -> None:
            seen.append(event.data["name"])

        events.subscribe("gen-1", _listener)
        await events.section_completed("gen-1", name="Transport", progress=50)

        assert seen == ["Transport"]

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_block_others(self) -> None:
        events = JobEvents()
        seen: list[Event] = []

        def _broken(event: Event) -> None:
            raise RuntimeError("listener bug")

        events.subscribe("job-1", _broken)
        events.subscribe("job-1", seen.append)

        await events.job_state_changed("job-1", state="failed")

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        events = JobEvents()
        seen: list[Event] = []
        events.subscribe("job-1", seen.append)
        events.subscribe("job-1", seen.append)
        events.unsubscribe("job-1", seen.append)

        await events.job_state_changed("job-1", state="running")

        assert seen == []

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        event = await JobEvents().publish(SECTION_COMPLETED, "gen-1", progress=100)
        payload = event.to_dict()

        assert payload["type"] == SECTION_COMPLETED
        assert payload["key"] == "gen-1"
        assert payload["data"] == {"progress": 100}
        assert "T" in payload["timestamp"]

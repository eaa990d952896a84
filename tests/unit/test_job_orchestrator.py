"""Unit tests for the JobOrchestrator - retries, liveness reclaim and cancellation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from notebookrag.models.job import JobKind, JobState
from notebookrag.pipeline.events import ALL_EVENTS, JobEvents
from notebookrag.pipeline.job_orchestrator import JobOrchestrator
from notebookrag.utils.errors import ProviderError, ProviderFatalError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _make_orchestrator(job_store, **kwargs) -> JobOrchestrator:
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("heartbeat_interval", 0.05)
    kwargs.setdefault("retry_backoff_base", 0.0)
    return JobOrchestrator(job_store, **kwargs)


async def _wait_for_state(orchestrator: JobOrchestrator, job_id: str, state: JobState) -> None:
    for _ in range(200):
        if (await orchestrator.status(job_id)).state == state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {state.value}")


# ---------------------------------------------------------------------------
# Inline execution and retries
# ---------------------------------------------------------------------------


class TestExecution:
    @pytest.mark.asyncio
    async def test_successful_job_records_result(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)

        async def _handler(job):
            return {"echo": job.payload["value"]}

        orchestrator.register(JobKind.INGEST, _handler)
        job = await orchestrator.submit(JobKind.INGEST, {"value": 42})

        assert await orchestrator.run_until_idle() == 1
        status = await orchestrator.status(job.id)
        assert status.state == JobState.SUCCEEDED
        assert status.result == {"echo": 42}
        assert status.attempts == 1
        assert status.error is None

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)
        attempts: list[int] = []

        async def _flaky(job):
            attempts.append(job.attempts)
            if len(attempts) == 1:
                raise ProviderError(message="503 from provider", provider_name="fake")
            return {"ok": True}

        orchestrator.register(JobKind.EMBED, _flaky)
        job = await orchestrator.submit(JobKind.EMBED)
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job.id)
        assert status.state == JobState.SUCCEEDED
        assert attempts == [1, 2]
        assert status.last_error is not None
        assert status.last_error.kind == "ProviderError"

    @pytest.mark.asyncio
    async def test_attempts_exhausted_is_failed_final(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)

        async def _always_fails(job):
            raise ProviderError(message="still down", provider_name="fake")

        orchestrator.register(JobKind.EMBED, _always_fails)
        job = await orchestrator.submit(JobKind.EMBED, max_attempts=2)
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job.id)
        assert status.state == JobState.FAILED_FINAL
        assert status.attempts == 2
        assert status.error.kind == "ProviderError"
        assert status.error.provider == "fake"

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)

        async def _fatal(job):
            raise ProviderFatalError(message="invalid api key", provider_name="fake")

        orchestrator.register(JobKind.EMBED, _fatal)
        job = await orchestrator.submit(JobKind.EMBED, max_attempts=5)
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job.id)
        assert status.state == JobState.FAILED_FINAL
        assert status.attempts == 1

    @pytest.mark.asyncio
    async def test_unregistered_kind_fails_final(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)
        job = await orchestrator.submit(JobKind.BATCH_SEARCH)
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job.id)
        assert status.state == JobState.FAILED_FINAL
        assert "No handler" in status.error.message

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, retry_backoff_base=10.0, clock=clock)
        calls = 0

        async def _flaky(job):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ProviderError(message="busy", provider_name="fake")
            return None

        orchestrator.register(JobKind.EMBED, _flaky)
        job = await orchestrator.submit(JobKind.EMBED)

        assert await orchestrator.run_until_idle() == 1
        assert (await orchestrator.status(job.id)).state == JobState.QUEUED
        clock.advance(9)
        assert await orchestrator.run_until_idle() == 0
        clock.advance(2)
        assert await orchestrator.run_until_idle() == 1
        assert (await orchestrator.status(job.id)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_state_changes_are_published(self, job_store) -> None:
        events = JobEvents()
        seen: list[str] = []
        events.subscribe(ALL_EVENTS, lambda event: seen.append(event.data["state"]))
        orchestrator = _make_orchestrator(job_store, events=events)

        async def _handler(job):
            return None

        orchestrator.register(JobKind.INGEST, _handler)
        await orchestrator.submit(JobKind.INGEST)
        await orchestrator.run_until_idle()

        assert seen == ["queued", "running", "succeeded"]


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------


class TestReclaim:
    @pytest.mark.asyncio
    async def test_orphaned_job_is_reclaimed_exactly_once(self, job_store) -> None:
        clock = FakeClock()
        first = _make_orchestrator(job_store, liveness_timeout=300, clock=clock)
        second = _make_orchestrator(job_store, liveness_timeout=300, clock=clock)
        job = await first.submit(JobKind.INGEST)

        # A worker claims the job and then dies without heartbeating.
        claimed = await job_store.claim_next("dead-worker", clock())
        assert claimed.id == job.id
        clock.advance(301)

        results = await asyncio.gather(first.reap_stale(), second.reap_stale())

        reclaimed = [job_id for batch in results for job_id in batch]
        assert reclaimed == [job.id]
        status = await first.status(job.id)
        assert status.state == JobState.QUEUED
        assert status.last_error.kind == "LivenessTimeout"
        assert not await job_store.heartbeat(job.id, "dead-worker", clock())

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_is_not_reclaimed(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, liveness_timeout=300, clock=clock)
        job = await orchestrator.submit(JobKind.INGEST)
        await job_store.claim_next("live-worker", clock())

        clock.advance(200)
        assert await job_store.heartbeat(job.id, "live-worker", clock())
        clock.advance(200)

        assert await orchestrator.reap_stale() == []
        assert (await orchestrator.status(job.id)).state == JobState.RUNNING

    @pytest.mark.asyncio
    async def test_reclaimed_job_without_attempts_left_fails_final(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, liveness_timeout=60, clock=clock)
        job = await orchestrator.submit(JobKind.INGEST, max_attempts=1)
        await job_store.claim_next("dead-worker", clock())
        clock.advance(61)

        assert await orchestrator.reap_stale() == [job.id]
        assert (await orchestrator.status(job.id)).state == JobState.FAILED_FINAL

    @pytest.mark.asyncio
    async def test_reclaimed_job_runs_again(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, liveness_timeout=60, clock=clock)
        runs: list[int] = []

        async def _handler(job):
            runs.append(job.attempts)
            return None

        orchestrator.register(JobKind.INGEST, _handler)
        job = await orchestrator.submit(JobKind.INGEST)
        await job_store.claim_next("dead-worker", clock())
        clock.advance(61)
        await orchestrator.reap_stale()

        await orchestrator.run_until_idle()

        assert runs == [2]
        assert (await orchestrator.status(job.id)).state == JobState.SUCCEEDED


# ---------------------------------------------------------------------------
# Cancellation and the worker pool
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)
        job = await orchestrator.submit(JobKind.INGEST)

        status = await orchestrator.cancel(job.id)

        assert status.state == JobState.CANCELLED
        assert await orchestrator.run_until_idle() == 0

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_noop(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)

        async def _handler(job):
            return None

        orchestrator.register(JobKind.INGEST, _handler)
        job = await orchestrator.submit(JobKind.INGEST)
        await orchestrator.run_until_idle()

        assert (await orchestrator.cancel(job.id)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_cancel_running_job_interrupts_handler(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store, worker_count=1)
        interrupted = asyncio.Event()

        async def _blocks(job):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                interrupted.set()
                raise

        orchestrator.register(JobKind.REPORT_SECTION, _blocks)
        await orchestrator.start()
        try:
            job = await orchestrator.submit(JobKind.REPORT_SECTION)
            await _wait_for_state(orchestrator, job.id, JobState.RUNNING)

            await orchestrator.cancel(job.id)
            status = await orchestrator.wait_for(job.id, timeout=5)
        finally:
            await orchestrator.stop()

        assert status.state == JobState.CANCELLED
        assert interrupted.is_set()

    @pytest.mark.asyncio
    async def test_cancel_from_another_process_is_seen_by_heartbeat(self, job_store) -> None:
        worker = _make_orchestrator(job_store, worker_count=1)
        api = _make_orchestrator(job_store)

        async def _blocks(job):
            await asyncio.Event().wait()

        worker.register(JobKind.INGEST, _blocks)
        await worker.start()
        try:
            job = await api.submit(JobKind.INGEST)
            await _wait_for_state(api, job.id, JobState.RUNNING)

            await api.cancel(job.id)
            status = await api.wait_for(job.id, timeout=5, poll_interval=0.02)
        finally:
            await worker.stop()

        assert status.state == JobState.CANCELLED


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_workers_run_submitted_jobs(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store, worker_count=3)

        async def _handler(job):
            await asyncio.sleep(0.01)
            return {"n": job.payload["n"]}

        orchestrator.register(JobKind.INGEST, _handler)
        await orchestrator.start()
        try:
            assert orchestrator.is_running
            jobs = [await orchestrator.submit(JobKind.INGEST, {"n": i}) for i in range(6)]
            statuses = [await orchestrator.wait_for(j.id, timeout=5) for j in jobs]
        finally:
            await orchestrator.stop()

        assert not orchestrator.is_running
        assert [s.result["n"] for s in statuses] == list(range(6))
        assert all(s.state == JobState.SUCCEEDED for s in statuses)
        assert all(s.attempts == 1 for s in statuses)

    @pytest.mark.asyncio
    async def test_stop_returns_running_job_to_queue(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store, worker_count=1)

        async def _blocks(job):
            await asyncio.Event().wait()

        orchestrator.register(JobKind.INGEST, _blocks)
        await orchestrator.start()
        job = await orchestrator.submit(JobKind.INGEST)
        await _wait_for_state(orchestrator, job.id, JobState.RUNNING)

        await orchestrator.stop()

        assert (await orchestrator.status(job.id)).state == JobState.QUEUED


# ---------------------------------------------------------------------------
# Claims, pending cancels and terminal hooks
# ---------------------------------------------------------------------------


class TestClaim:
    @pytest.mark.asyncio
    async def test_racing_owners_claim_a_job_once(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, clock=clock)
        job = await orchestrator.submit(JobKind.INGEST)

        claims = await asyncio.gather(
            *(job_store.claim_next(f"worker-{i}", clock()) for i in range(4))
        )

        winners = [c for c in claims if c is not None]
        assert [c.id for c in winners] == [job.id]
        stored = await job_store.get(job.id)
        assert stored.owner == winners[0].owner
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_cancel_requested_job_is_not_claimed(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, clock=clock)
        job = await orchestrator.submit(JobKind.INGEST)
        await job_store.request_cancel(job.id)

        assert await job_store.claim_next("worker-1", clock()) is None


class TestPendingCancel:
    @pytest.mark.asyncio
    async def test_retryable_failure_with_pending_cancel_is_cancelled(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)
        runs: list[int] = []

        async def _cancelled_then_fails(job):
            runs.append(job.attempts)
            # Another process asks for a cancel before any heartbeat sees it.
            await job_store.request_cancel(job.id)
            raise ProviderError(message="connection reset", provider_name="fake")

        orchestrator.register(JobKind.EMBED, _cancelled_then_fails)
        job = await orchestrator.submit(JobKind.EMBED, max_attempts=3)

        await orchestrator.run_until_idle()
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job.id)
        assert status.state == JobState.CANCELLED
        assert status.error.kind == "Cancelled"
        assert runs == [1]

    @pytest.mark.asyncio
    async def test_stale_job_with_pending_cancel_is_cancelled(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, liveness_timeout=60, clock=clock)
        job = await orchestrator.submit(JobKind.INGEST, max_attempts=3)
        await job_store.claim_next("dead-worker", clock())
        await job_store.request_cancel(job.id)
        clock.advance(61)

        assert await orchestrator.reap_stale() == [job.id]
        assert (await orchestrator.status(job.id)).state == JobState.CANCELLED


class TestTerminalHooks:
    @pytest.mark.asyncio
    async def test_hook_sees_failed_final_and_cancelled_jobs(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)
        seen: list[tuple[str, JobState]] = []

        async def _hook(job):
            seen.append((job.id, job.state))

        async def _handler(job):
            if job.payload.get("fail"):
                raise ProviderFatalError(message="quota exhausted", provider_name="fake")
            return None

        orchestrator.register(JobKind.REPORT_SECTION, _handler)
        orchestrator.on_terminal_failure(JobKind.REPORT_SECTION, _hook)
        ok = await orchestrator.submit(JobKind.REPORT_SECTION)
        failing = await orchestrator.submit(JobKind.REPORT_SECTION, {"fail": True})
        await orchestrator.run_until_idle()
        queued = await orchestrator.submit(JobKind.REPORT_SECTION)
        await orchestrator.cancel(queued.id)

        assert seen == [(failing.id, JobState.FAILED_FINAL), (queued.id, JobState.CANCELLED)]
        assert ok.id not in {job_id for job_id, _ in seen}

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_the_transition(self, job_store) -> None:
        orchestrator = _make_orchestrator(job_store)

        async def _broken_hook(job):
            raise RuntimeError("listener bug")

        orchestrator.on_terminal_failure(JobKind.INGEST, _broken_hook)
        job = await orchestrator.submit(JobKind.INGEST)

        assert (await orchestrator.cancel(job.id)).state == JobState.CANCELLED


class TestListJobs:
    @pytest.mark.asyncio
    async def test_filters_by_state_and_kind(self, job_store) -> None:
        clock = FakeClock()
        orchestrator = _make_orchestrator(job_store, clock=clock)
        ingest = await orchestrator.submit(JobKind.INGEST)
        clock.advance(1)
        embed = await orchestrator.submit(JobKind.EMBED)
        clock.advance(1)
        cancelled = await orchestrator.submit(JobKind.EMBED)
        await orchestrator.cancel(cancelled.id)

        everything = await orchestrator.list_jobs()
        queued_embeds = await orchestrator.list_jobs(state=JobState.QUEUED, kind=JobKind.EMBED)

        assert [s.job_id for s in everything] == [cancelled.id, embed.id, ingest.id]
        assert [s.job_id for s in queued_embeds] == [embed.id]
        assert len(await orchestrator.list_jobs(limit=1)) == 1

# =============================================================================
# notebookrag/cli/worker.py - CLI Job Worker and Job Inspection
# =============================================================================
#
#   run    - Start the worker pool and process jobs until interrupted.
#            Any number of worker processes may share one database; claims
#            are atomic and jobs of a crashed worker are reclaimed once
#            their heartbeat goes stale.
#   list   - List recent jobs, optionally filtered by state and kind
#   status - Print a job's state, attempts, result and error
#   cancel - Request cancellation of a job
#   reap   - Reclaim stale running jobs once and exit
#
# Usage examples:
#   START_WORKERS=false uvicorn notebookrag.main:app   # API only
#   python -m notebookrag.cli worker run               # separate workers
#   python -m notebookrag.cli worker status <job-id>
# =============================================================================

"""Run background job workers and inspect jobs."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from typing import Any

import structlog

from notebookrag.cli._factory import build_from_environment, initialize_components
from notebookrag.models.job import JobKind, JobState, JobStatus
from notebookrag.utils.concurrency import reset_throttles
from notebookrag.utils.errors import NotebookRAGError

logger = structlog.get_logger(logger_name=__name__)


def _print_status(status: JobStatus) -> None:
    print(f"Job {status.job_id} ({status.kind.value}): {status.state.value}")
    print(f"  attempts: {status.attempts}/{status.max_attempts}")
    if status.result:
        print(f"  result:   {json.dumps(status.result, default=str)[:500]}")
    error = status.error or status.last_error
    if error:
        print(f"  error:    {error.kind}: {error.message}")


async def _handle_run(args: argparse.Namespace, components: dict[str, Any]) -> int:
    orchestrator = components["orchestrator"]
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await orchestrator.start()
    logger.info("worker_process_started")
    try:
        await stop.wait()
    finally:
        await orchestrator.stop()
        reset_throttles()
        logger.info("worker_process_stopped")
    return 0


async def _handle_list(args: argparse.Namespace, components: dict[str, Any]) -> int:
    statuses = await components["orchestrator"].list_jobs(
        state=JobState(args.state) if args.state else None,
        kind=JobKind(args.kind) if args.kind else None,
        limit=args.limit,
    )
    if not statuses:
        print("No jobs found")
        return 0
    for status in statuses:
        error = status.error or status.last_error
        suffix = f"  {error.kind}" if error else ""
        print(
            f"{status.job_id}  {status.kind.value:<14} {status.state.value:<12} "
            f"{status.attempts}/{status.max_attempts}{suffix}"
        )
    print(f"{len(statuses)} job(s)")
    return 0


async def _handle_status(args: argparse.Namespace, components: dict[str, Any]) -> int:
    _print_status(await components["orchestrator"].status(args.job))
    return 0


async def _handle_cancel(args: argparse.Namespace, components: dict[str, Any]) -> int:
    _print_status(await components["orchestrator"].cancel(args.job))
    return 0


async def _handle_reap(args: argparse.Namespace, components: dict[str, Any]) -> int:
    reclaimed = await components["orchestrator"].reap_stale()
    print(f"Reclaimed {len(reclaimed)} stale job(s)")
    for job_id in reclaimed:
        print(f"  {job_id}")
    return 0


_HANDLERS = {
    "run": _handle_run,
    "list": _handle_list,
    "status": _handle_status,
    "cancel": _handle_cancel,
    "reap": _handle_reap,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m notebookrag.cli worker",
        description="Run background job workers and inspect jobs.",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Worker commands")

    subparsers.add_parser("run", help="Process jobs until interrupted")
    list_parser = subparsers.add_parser("list", help="List recent jobs")
    list_parser.add_argument("--state", choices=[s.value for s in JobState], default=None)
    list_parser.add_argument("--kind", choices=[k.value for k in JobKind], default=None)
    list_parser.add_argument("--limit", type=int, default=20, help="Maximum jobs to show")
    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job", help="Job id")
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job", help="Job id")
    subparsers.add_parser("reap", help="Reclaim stale running jobs")

    return parser


async def _run(args: argparse.Namespace) -> int:
    components = build_from_environment(args.config)
    await initialize_components(components)
    try:
        return await _HANDLERS[args.command](args, components)
    except NotebookRAGError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the job worker."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()

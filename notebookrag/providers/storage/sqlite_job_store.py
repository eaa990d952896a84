"""SQLite-backed job store with compare-and-set state transitions.

Every mutation is a single conditional ``UPDATE`` whose ``WHERE`` clause
names the expected state (and owner), followed by a rowcount check.  SQLite
serializes writers, so two workers racing for the same job cannot both see
``rowcount == 1``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from notebookrag.interfaces.job_store import IJobStore
from notebookrag.models.document import utc_now
from notebookrag.models.job import ALLOWED_TRANSITIONS, Job, JobError, JobKind, JobState
from notebookrag.providers.storage.sqlite_base import (
    SQLiteStoreBase,
    connect,
    dumps,
    from_iso,
    loads,
    to_iso,
)
from notebookrag.utils.errors import ConsistencyError, NotFoundError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS jobs (
    id                TEXT PRIMARY KEY,
    kind              TEXT NOT NULL,
    state             TEXT NOT NULL,
    payload           TEXT NOT NULL DEFAULT '{}',
    result            TEXT,
    error             TEXT,
    last_error        TEXT,
    attempts          INTEGER NOT NULL DEFAULT 0,
    max_attempts      INTEGER NOT NULL DEFAULT 3,
    owner             TEXT,
    cancel_requested  INTEGER NOT NULL DEFAULT 0,
    available_at      TEXT NOT NULL,
    heartbeat_at      TEXT,
    created_at        TEXT NOT NULL,
    started_at        TEXT,
    finished_at       TEXT
);
"""

_CREATE_INDICES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_jobs_runnable ON jobs(state, available_at, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_heartbeat ON jobs(state, heartbeat_at);",
)

_INSERT_SQL = """\
INSERT INTO jobs (id, kind, state, payload, attempts, max_attempts, cancel_requested,
                  available_at, created_at)
VALUES (?, ?, 'queued', ?, 0, ?, 0, ?, ?);
"""

_SELECT_RUNNABLE_SQL = """\
SELECT id FROM jobs
WHERE state = 'queued' AND cancel_requested = 0 AND available_at <= ?
ORDER BY available_at ASC, created_at ASC
LIMIT 10;
"""

_CLAIM_SQL = """\
UPDATE jobs
SET state = 'running', owner = ?, attempts = attempts + 1,
    started_at = ?, heartbeat_at = ?, finished_at = NULL
WHERE id = ? AND state = 'queued' AND cancel_requested = 0 AND available_at <= ?;
"""

_HEARTBEAT_SQL = """\
UPDATE jobs SET heartbeat_at = ?
WHERE id = ? AND owner = ? AND state = 'running';
"""


class SQLiteJobStore(SQLiteStoreBase, IJobStore):
    """Persisted job state machines."""

    _SCHEMA = (_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL)

    async def initialize(self) -> None:
        await self._create_schema()
        logger.info("job_store_initialized", path=str(self._db_path))

    async def create(self, job: Job) -> Job:
        async with connect(self._db_path) as db:
            await db.execute(
                _INSERT_SQL,
                (
                    job.id,
                    job.kind.value,
                    dumps(job.payload),
                    job.max_attempts,
                    to_iso(job.available_at),
                    to_iso(job.created_at),
                ),
            )
            await db.commit()
        logger.info("job_created", job_id=job.id, kind=job.kind.value)
        return await self.get(job.id)

    async def get(self, job_id: str) -> Job:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Job {job_id} not found", provider_name="sqlite")
        return _row_to_job(row)

    async def list_jobs(
        self,
        state: JobState | None = None,
        kind: JobKind | None = None,
        limit: int = 100,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                tuple(params),
            )
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def claim_next(self, owner: str, now: datetime) -> Job | None:
        now_iso = to_iso(now)
        async with connect(self._db_path) as db:
            cursor = await db.execute(_SELECT_RUNNABLE_SQL, (now_iso,))
            candidates = [row["id"] for row in await cursor.fetchall()]
            for job_id in candidates:
                cursor = await db.execute(_CLAIM_SQL, (owner, now_iso, now_iso, job_id, now_iso))
                await db.commit()
                changed = cursor.rowcount
                if changed == 1:
                    logger.debug("job_claimed", job_id=job_id, owner=owner)
                    return await self.get(job_id)
        return None

    async def heartbeat(self, job_id: str, owner: str, now: datetime) -> bool:
        async with connect(self._db_path) as db:
            cursor = await db.execute(_HEARTBEAT_SQL, (to_iso(now), job_id, owner))
            await db.commit()
            changed = cursor.rowcount
        return changed == 1

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
        if (expected_state, new_state) not in ALLOWED_TRANSITIONS:
            raise ConsistencyError(
                message=f"Illegal job transition {expected_state.value} -> {new_state.value}",
                provider_name="sqlite",
            )
        now_iso = to_iso(now or utc_now())
        assignments, params = _assignments_for(new_state, result, error, available_at, now_iso)

        sql = f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND state = ?"
        params.extend([job_id, expected_state.value])
        if expected_owner is not None:
            sql += " AND owner = ?"
            params.append(expected_owner)

        async with connect(self._db_path) as db:
            cursor = await db.execute(sql, tuple(params))
            await db.commit()
            changed = cursor.rowcount

        if changed != 1:
            current = await self.get(job_id)
            raise ConsistencyError(
                message=(
                    f"Job {job_id} is {current.state.value} (owner={current.owner}), "
                    f"expected {expected_state.value} (owner={expected_owner})"
                ),
                provider_name="sqlite",
            )
        logger.info(
            "job_transitioned",
            job_id=job_id,
            from_state=expected_state.value,
            to_state=new_state.value,
        )
        return await self.get(job_id)

    async def request_cancel(self, job_id: str) -> Job:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE jobs SET cancel_requested = 1 WHERE id = ?", (job_id,)
            )
            await db.commit()
            changed = cursor.rowcount
        if changed == 0:
            raise NotFoundError(message=f"Job {job_id} not found", provider_name="sqlite")
        return await self.get(job_id)

    async def find_stale(self, heartbeat_before: datetime) -> list[Job]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE state = 'running' AND heartbeat_at < ? "
                "ORDER BY heartbeat_at ASC",
                (to_iso(heartbeat_before),),
            )
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]


def _assignments_for(
    new_state: JobState,
    result: dict[str, Any] | None,
    error: JobError | None,
    available_at: datetime | None,
    now_iso: str,
) -> tuple[list[str], list[Any]]:
    """SET clauses that keep the result/error payload invariant for *new_state*."""
    assignments = ["state = ?"]
    params: list[Any] = [new_state.value]
    error_json = dumps(error.model_dump(mode="json")) if error is not None else None

    if new_state == JobState.SUCCEEDED:
        assignments += ["result = ?", "error = NULL", "finished_at = ?", "owner = NULL"]
        params += [dumps(result or {}), now_iso]
    elif new_state in (JobState.FAILED, JobState.FAILED_FINAL, JobState.CANCELLED):
        assignments += [
            "result = NULL",
            "error = ?",
            "last_error = COALESCE(?, last_error)",
            "finished_at = ?",
            "owner = NULL",
        ]
        params += [error_json, error_json, now_iso]
    elif new_state == JobState.QUEUED:
        assignments += [
            "last_error = COALESCE(?, error, last_error)",
            "error = NULL",
            "result = NULL",
            "owner = NULL",
            "heartbeat_at = NULL",
            "finished_at = NULL",
            "available_at = ?",
        ]
        params += [error_json, to_iso(available_at) or now_iso]
    return assignments, params


def _row_to_job(row) -> Job:
    error = loads(row["error"])
    last_error = loads(row["last_error"])
    return Job(
        id=row["id"],
        kind=JobKind(row["kind"]),
        state=JobState(row["state"]),
        payload=loads(row["payload"], {}),
        result=loads(row["result"]),
        error=JobError.model_validate(error) if error else None,
        last_error=JobError.model_validate(last_error) if last_error else None,
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        owner=row["owner"],
        cancel_requested=bool(row["cancel_requested"]),
        available_at=from_iso(row["available_at"]),
        heartbeat_at=from_iso(row["heartbeat_at"]),
        created_at=from_iso(row["created_at"]),
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
    )

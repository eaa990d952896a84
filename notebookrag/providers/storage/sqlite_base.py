"""Shared aiosqlite plumbing for the SQLite stores.

All stores share one database file.  Each store owns its tables and
creates them in ``initialize()``; connections are short-lived
(``async with connect(path) as db``), enable foreign keys so chunk and
embedding rows cascade with their document, and return rows as
``aiosqlite.Row``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

_DEFAULT_DB_PATH = Path("data/notebookrag.db")
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class SQLiteStoreBase:
    """Holds the database path and schema bootstrap for a store."""

    _SCHEMA: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def _create_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with connect(self._db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for statement in self._SCHEMA:
                await db.execute(statement)
            await db.commit()


@asynccontextmanager
async def connect(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with foreign keys on and ``Row`` results."""
    async with aiosqlite.connect(str(db_path), timeout=30.0) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON;")
        yield db


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a fixed-width UTC string (sorts lexically)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _ISO_FORMAT).replace(tzinfo=timezone.utc)


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def loads(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)

"""SQLite-backed chat session store (aiosqlite)."""

from __future__ import annotations

import structlog

from notebookrag.interfaces.chat_store import IChatStore
from notebookrag.models.chat import ChatMessage, ChatRole, ChatSession
from notebookrag.models.rag import Citation
from notebookrag.providers.storage.sqlite_base import (
    SQLiteStoreBase,
    connect,
    dumps,
    from_iso,
    loads,
    to_iso,
)
from notebookrag.utils.errors import NotFoundError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_SESSIONS_SQL = """\
CREATE TABLE IF NOT EXISTS chat_sessions (
    id           TEXT PRIMARY KEY,
    notebook_id  TEXT NOT NULL,
    title        TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL
);
"""

_CREATE_MESSAGES_SQL = """\
CREATE TABLE IF NOT EXISTS chat_messages (
    id          TEXT PRIMARY KEY,
    session_id  TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    seq         INTEGER NOT NULL,
    role        TEXT NOT NULL,
    content     TEXT NOT NULL,
    citations   TEXT NOT NULL DEFAULT '[]',
    incomplete  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL
);
"""

_CREATE_INDICES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON chat_messages(session_id, seq);",
    "CREATE INDEX IF NOT EXISTS idx_sessions_notebook ON chat_sessions(notebook_id);",
)

# seq is allocated inside the INSERT so concurrent appends stay ordered.
_INSERT_MESSAGE_SQL = """\
INSERT INTO chat_messages (id, session_id, seq, role, content, citations, incomplete, created_at)
VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages WHERE session_id = ?),
        ?, ?, ?, ?, ?);
"""


class SQLiteChatStore(SQLiteStoreBase, IChatStore):
    """Chat sessions and their ordered messages."""

    _SCHEMA = (_CREATE_SESSIONS_SQL, _CREATE_MESSAGES_SQL, *_CREATE_INDICES_SQL)

    async def initialize(self) -> None:
        await self._create_schema()
        logger.info("chat_store_initialized", path=str(self._db_path))

    async def create_session(self, session: ChatSession) -> ChatSession:
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO chat_sessions (id, notebook_id, title, created_at) VALUES (?, ?, ?, ?)",
                (session.id, session.notebook_id, session.title, to_iso(session.created_at)),
            )
            await db.commit()
        logger.info("chat_session_created", session_id=session.id, notebook_id=session.notebook_id)
        return session

    async def get_session(self, session_id: str) -> ChatSession:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Chat session {session_id} not found", provider_name="sqlite")
        return _row_to_session(row)

    async def list_sessions(self, notebook_id: str) -> list[ChatSession]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM chat_sessions WHERE notebook_id = ? ORDER BY created_at DESC",
                (notebook_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_session(r) for r in rows]

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        async with connect(self._db_path) as db:
            await db.execute(
                _INSERT_MESSAGE_SQL,
                (
                    message.id,
                    message.session_id,
                    message.session_id,
                    message.role.value,
                    message.content,
                    dumps([c.model_dump(mode="json") for c in message.citations]),
                    int(message.incomplete),
                    to_iso(message.created_at),
                ),
            )
            await db.commit()
        return message

    async def get_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        async with connect(self._db_path) as db:
            if limit is None:
                cursor = await db.execute(
                    "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq ASC",
                    (session_id,),
                )
            else:
                cursor = await db.execute(
                    "SELECT * FROM (SELECT * FROM chat_messages WHERE session_id = ? "
                    "ORDER BY seq DESC LIMIT ?) ORDER BY seq ASC",
                    (session_id, limit),
                )
            rows = await cursor.fetchall()
        return [
            ChatMessage(
                id=r["id"],
                session_id=r["session_id"],
                role=ChatRole(r["role"]),
                content=r["content"],
                citations=[Citation.model_validate(c) for c in loads(r["citations"], [])],
                incomplete=bool(r["incomplete"]),
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]


def _row_to_session(row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        notebook_id=row["notebook_id"],
        title=row["title"],
        created_at=from_iso(row["created_at"]),
    )

"""SQLite-backed document, chunk and metadata-schema store (aiosqlite)."""

from __future__ import annotations

import structlog

from notebookrag.interfaces.document_store import IDocumentStore
from notebookrag.models.document import (
    Chunk,
    ChunkType,
    Document,
    DocumentStatus,
    MetadataField,
    MetadataSchema,
)
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

_CREATE_DOCUMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    id                   TEXT PRIMARY KEY,
    notebook_id          TEXT NOT NULL,
    filename             TEXT NOT NULL DEFAULT '',
    content_type         TEXT NOT NULL DEFAULT 'text/plain',
    content_hash         TEXT NOT NULL DEFAULT '',
    text                 TEXT NOT NULL DEFAULT '',
    metadata             TEXT NOT NULL DEFAULT '{}',
    metadata_confidence  TEXT NOT NULL DEFAULT '{}',
    metadata_warnings    TEXT NOT NULL DEFAULT '[]',
    metadata_extracted   INTEGER NOT NULL DEFAULT 0,
    status               TEXT NOT NULL DEFAULT 'pending',
    created_at           TEXT NOT NULL
);
"""

_CREATE_CHUNKS_SQL = """\
CREATE TABLE IF NOT EXISTS chunks (
    id             TEXT PRIMARY KEY,
    document_id    TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    notebook_id    TEXT NOT NULL,
    ordinal        INTEGER NOT NULL,
    text           TEXT NOT NULL,
    start_offset   INTEGER NOT NULL,
    end_offset     INTEGER NOT NULL,
    section_label  TEXT,
    chunk_type     TEXT NOT NULL DEFAULT 'text',
    content_hash   TEXT NOT NULL,
    UNIQUE(document_id, ordinal)
);
"""

_CREATE_SCHEMAS_SQL = """\
CREATE TABLE IF NOT EXISTS metadata_schemas (
    notebook_id  TEXT PRIMARY KEY,
    fields       TEXT NOT NULL,
    updated_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_documents_notebook ON documents(notebook_id);",
    "CREATE INDEX IF NOT EXISTS idx_documents_hash ON documents(notebook_id, content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id, ordinal);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_notebook ON chunks(notebook_id);",
)

_INSERT_DOCUMENT_SQL = """\
INSERT INTO documents (id, notebook_id, filename, content_type, content_hash, text,
                       metadata, metadata_confidence, metadata_warnings,
                       metadata_extracted, status, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_INSERT_CHUNK_SQL = """\
INSERT OR IGNORE INTO chunks (id, document_id, notebook_id, ordinal, text, start_offset,
                              end_offset, section_label, chunk_type, content_hash)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPDATE_METADATA_SQL = """\
UPDATE documents
SET metadata = ?, metadata_confidence = ?, metadata_warnings = ?, metadata_extracted = 1
WHERE id = ? AND metadata_extracted = 0;
"""

_UPSERT_SCHEMA_SQL = """\
INSERT INTO metadata_schemas (notebook_id, fields) VALUES (?, ?)
ON CONFLICT(notebook_id)
DO UPDATE SET fields = excluded.fields,
              updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now');
"""

_CHUNK_COLUMNS = (
    "id, document_id, notebook_id, ordinal, text, start_offset, end_offset, "
    "section_label, chunk_type, content_hash"
)


class SQLiteDocumentStore(SQLiteStoreBase, IDocumentStore):
    """Documents, their chunks and per-notebook metadata schemas."""

    _SCHEMA = (_CREATE_DOCUMENTS_SQL, _CREATE_CHUNKS_SQL, _CREATE_SCHEMAS_SQL, *_CREATE_INDICES_SQL)

    async def initialize(self) -> None:
        await self._create_schema()
        logger.info("document_store_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def add_document(self, document: Document) -> Document:
        async with connect(self._db_path) as db:
            await db.execute(
                _INSERT_DOCUMENT_SQL,
                (
                    document.id,
                    document.notebook_id,
                    document.filename,
                    document.content_type,
                    document.content_hash,
                    document.text,
                    dumps(document.metadata),
                    dumps(document.metadata_confidence),
                    dumps(document.metadata_warnings),
                    int(document.metadata_extracted),
                    document.status.value,
                    to_iso(document.created_at),
                ),
            )
            await db.commit()
        logger.info("document_added", document_id=document.id, notebook_id=document.notebook_id)
        return document

    async def get_document(self, document_id: str) -> Document:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Document {document_id} not found", provider_name="sqlite")
        return _row_to_document(row)

    async def find_by_content_hash(self, notebook_id: str, content_hash: str) -> Document | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM documents WHERE notebook_id = ? AND content_hash = ? "
                "ORDER BY created_at ASC LIMIT 1",
                (notebook_id, content_hash),
            )
            row = await cursor.fetchone()
        return _row_to_document(row) if row is not None else None

    async def list_documents(self, notebook_id: str) -> list[Document]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM documents WHERE notebook_id = ? ORDER BY created_at ASC, id ASC",
                (notebook_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_document(r) for r in rows]

    async def update_metadata(
        self,
        document_id: str,
        metadata: dict,
        confidence: dict[str, float],
        warnings: list[str],
    ) -> Document:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                _UPDATE_METADATA_SQL,
                (dumps(metadata), dumps(confidence), dumps(warnings), document_id),
            )
            await db.commit()
            updated = cursor.rowcount
        document = await self.get_document(document_id)
        if updated == 0:
            # Already written by an earlier attempt of the same ingest job.
            logger.info("document_metadata_already_set", document_id=document_id)
        return document

    async def set_status(self, document_id: str, status: DocumentStatus) -> None:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE documents SET status = ? WHERE id = ?", (status.value, document_id)
            )
            await db.commit()
            changed = cursor.rowcount
        if changed == 0:
            raise NotFoundError(message=f"Document {document_id} not found", provider_name="sqlite")

    async def delete_document(self, document_id: str) -> int:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            )
            (chunk_count,) = await cursor.fetchone()
            cursor = await db.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            await db.commit()
            changed = cursor.rowcount
        if changed == 0:
            raise NotFoundError(message=f"Document {document_id} not found", provider_name="sqlite")
        logger.info("document_deleted", document_id=document_id, chunks_deleted=chunk_count)
        return chunk_count

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def add_chunks(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0
        rows = [
            (
                c.id,
                c.document_id,
                c.notebook_id,
                c.ordinal,
                c.text,
                c.start_offset,
                c.end_offset,
                c.section_label,
                c.chunk_type.value,
                c.content_hash,
            )
            for c in chunks
        ]
        keep: dict[str, list[str]] = {}
        for c in chunks:
            keep.setdefault(c.document_id, []).append(c.id)
        removed = 0
        async with connect(self._db_path) as db:
            # Chunks from an earlier chunking of the same document (a different
            # chunk size, say) are replaced; their vectors cascade with them.
            for document_id, ids in keep.items():
                placeholders = ",".join("?" for _ in ids)
                cursor = await db.execute(
                    f"DELETE FROM chunks WHERE document_id = ? AND id NOT IN ({placeholders})",
                    (document_id, *ids),
                )
                removed += max(cursor.rowcount, 0)
            cursor = await db.executemany(_INSERT_CHUNK_SQL, rows)
            await db.commit()
            inserted = max(cursor.rowcount, 0)
        logger.info(
            "chunks_added",
            document_id=chunks[0].document_id,
            submitted=len(chunks),
            inserted=inserted,
            stale_removed=removed,
        )
        return inserted

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? ORDER BY ordinal",
                (document_id,),
            )
            rows = await cursor.fetchall()
        return [row_to_chunk(r) for r in rows]

    async def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[Chunk]:
        if not chunk_ids:
            return []
        placeholders = ",".join("?" for _ in chunk_ids)
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders}) "
                "ORDER BY document_id, ordinal",
                tuple(chunk_ids),
            )
            rows = await cursor.fetchall()
        return [row_to_chunk(r) for r in rows]

    async def count_documents(self, notebook_id: str | None = None) -> int:
        async with connect(self._db_path) as db:
            if notebook_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM documents")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM documents WHERE notebook_id = ?", (notebook_id,)
                )
            (total,) = await cursor.fetchone()
        return total

    async def count_chunks(self, notebook_id: str | None = None) -> int:
        async with connect(self._db_path) as db:
            if notebook_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM chunks")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM chunks WHERE notebook_id = ?", (notebook_id,)
                )
            (total,) = await cursor.fetchone()
        return total

    # ------------------------------------------------------------------
    # Metadata schemas
    # ------------------------------------------------------------------

    async def get_metadata_schema(self, notebook_id: str) -> MetadataSchema:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT fields FROM metadata_schemas WHERE notebook_id = ?", (notebook_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return MetadataSchema(notebook_id=notebook_id)
        fields = [MetadataField.model_validate(f) for f in loads(row["fields"], [])]
        return MetadataSchema(notebook_id=notebook_id, fields=fields)

    async def set_metadata_schema(self, schema: MetadataSchema) -> None:
        payload = [f.model_dump(mode="json") for f in schema.fields]
        async with connect(self._db_path) as db:
            await db.execute(_UPSERT_SCHEMA_SQL, (schema.notebook_id, dumps(payload)))
            await db.commit()
        logger.info("metadata_schema_saved", notebook_id=schema.notebook_id, fields=len(payload))


def _row_to_document(row) -> Document:
    return Document(
        id=row["id"],
        notebook_id=row["notebook_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        content_hash=row["content_hash"],
        text=row["text"],
        metadata=loads(row["metadata"], {}),
        metadata_confidence=loads(row["metadata_confidence"], {}),
        metadata_warnings=loads(row["metadata_warnings"], []),
        metadata_extracted=bool(row["metadata_extracted"]),
        status=DocumentStatus(row["status"]),
        created_at=from_iso(row["created_at"]),
    )


def row_to_chunk(row) -> Chunk:
    """Build a :class:`Chunk` from a row selected with the chunk columns."""
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        notebook_id=row["notebook_id"],
        ordinal=row["ordinal"],
        text=row["text"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        section_label=row["section_label"],
        chunk_type=ChunkType(row["chunk_type"]),
        content_hash=row["content_hash"],
    )

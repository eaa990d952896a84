"""SQLite vector store: vectors beside the chunks, cosine scoring in numpy.

Vectors are stored as float32 blobs in an ``embeddings`` table keyed by
``(chunk_id, model)`` with a foreign key to ``chunks``, so deleting a
document cascades to its vectors and a vector can never reference a
missing chunk.  Queries load the candidate vectors for the requested scope
and score them with one matrix-vector product over L2-normalized rows.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np
import structlog

from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
from notebookrag.models.rag import EmbeddingRecord, RetrievedChunk
from notebookrag.providers.storage.sqlite_base import SQLiteStoreBase, connect, loads, to_iso
from notebookrag.providers.storage.sqlite_document_store import row_to_chunk
from notebookrag.providers.vector_store.filters import matches_filter
from notebookrag.utils.errors import ConsistencyError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id      TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    model         TEXT NOT NULL,
    vector        BLOB NOT NULL,
    dimension     INTEGER NOT NULL,
    content_hash  TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    PRIMARY KEY (chunk_id, model)
);
"""

_CREATE_INDICES_SQL = ("CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model);",)

_UPSERT_SQL = """\
INSERT INTO embeddings (chunk_id, model, vector, dimension, content_hash, created_at)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(chunk_id, model)
DO UPDATE SET vector = excluded.vector,
              dimension = excluded.dimension,
              content_hash = excluded.content_hash,
              created_at = excluded.created_at;
"""

_QUERY_SQL = """\
SELECT e.vector, e.dimension, d.metadata,
       c.id, c.document_id, c.notebook_id, c.ordinal, c.text, c.start_offset,
       c.end_offset, c.section_label, c.chunk_type, c.content_hash
FROM embeddings e
JOIN chunks c ON c.id = e.chunk_id
JOIN documents d ON d.id = c.document_id
WHERE e.model = ?
"""


class SQLiteVectorStore(SQLiteStoreBase, IVectorStoreProvider):
    """Vector store living in the main SQLite database.

    Requires the ``chunks`` and ``documents`` tables of
    :class:`~notebookrag.providers.storage.SQLiteDocumentStore` in the same
    database file.
    """

    _SCHEMA = (_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL)

    def __init__(self, db_path: str | Path = "data/notebookrag.db") -> None:
        super().__init__(db_path)

    async def initialize(self) -> None:
        await self._create_schema()
        logger.info("sqlite_vector_store_initialized", path=str(self._db_path))

    async def upsert_embeddings(self, records: list[EmbeddingRecord]) -> int:
        if not records:
            return 0
        chunk_ids = sorted({r.chunk_id for r in records})
        placeholders = ",".join("?" for _ in chunk_ids)
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                f"SELECT id FROM chunks WHERE id IN ({placeholders})", tuple(chunk_ids)
            )
            existing = {row["id"] for row in await cursor.fetchall()}
            missing = [cid for cid in chunk_ids if cid not in existing]
            if missing:
                raise ConsistencyError(
                    message=f"Cannot store embeddings for missing chunks: {missing[:5]}",
                    provider_name=self.get_provider_name(),
                )
            await db.executemany(
                _UPSERT_SQL,
                [
                    (
                        r.chunk_id,
                        r.model,
                        np.asarray(r.vector, dtype=np.float32).tobytes(),
                        len(r.vector),
                        r.content_hash,
                        to_iso(r.created_at),
                    )
                    for r in records
                ],
            )
            await db.commit()
        logger.info("embeddings_upserted", count=len(records), model=records[0].model)
        return len(records)

    async def get_content_hashes(self, chunk_ids: list[str], model: str) -> dict[str, str]:
        if not chunk_ids:
            return {}
        placeholders = ",".join("?" for _ in chunk_ids)
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                f"SELECT chunk_id, content_hash FROM embeddings "
                f"WHERE model = ? AND chunk_id IN ({placeholders})",
                (model, *chunk_ids),
            )
            rows = await cursor.fetchall()
        return {row["chunk_id"]: row["content_hash"] for row in rows}

    async def query(
        self,
        vector: list[float],
        model: str,
        notebook_id: str | None = None,
        top_k: int = 10,
        document_ids: list[str] | None = None,
        metadata_filter: dict[str, Any] | None = None,
        min_score: float | None = None,
    ) -> list[RetrievedChunk]:
        sql = _QUERY_SQL
        params: list[Any] = [model]
        if notebook_id is not None:
            sql += " AND c.notebook_id = ?"
            params.append(notebook_id)
        if document_ids:
            sql += f" AND c.document_id IN ({','.join('?' for _ in document_ids)})"
            params.extend(document_ids)

        async with connect(self._db_path) as db:
            cursor = await db.execute(sql, tuple(params))
            rows = await cursor.fetchall()

        candidates = []
        for row in rows:
            metadata = loads(row["metadata"], {})
            if matches_filter(metadata, metadata_filter):
                candidates.append((row, metadata))
        if not candidates:
            return []

        query_vec = np.asarray(vector, dtype=np.float32)
        dims = {row["dimension"] for row, _ in candidates}
        if dims != {query_vec.shape[0]}:
            raise ConsistencyError(
                message=f"Query vector has {query_vec.shape[0]} dims; stored vectors have {sorted(dims)}",
                provider_name=self.get_provider_name(),
            )

        matrix = np.vstack([np.frombuffer(row["vector"], dtype=np.float32) for row, _ in candidates])
        scores = _cosine_scores(matrix, query_vec)

        results: list[RetrievedChunk] = []
        for (row, metadata), score in zip(candidates, scores, strict=True):
            if min_score is not None and score < min_score:
                continue
            results.append(
                RetrievedChunk(chunk=row_to_chunk(row), score=float(score), document_metadata=metadata)
            )
        results.sort(key=lambda rc: (-rc.score, rc.chunk.ordinal, rc.chunk.id))
        logger.debug(
            "sqlite_vector_query",
            model=model,
            candidates=len(candidates),
            returned=min(len(results), top_k),
        )
        return results[:top_k]

    async def delete_by_document(self, document_id: str) -> int:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM embeddings WHERE chunk_id IN "
                "(SELECT id FROM chunks WHERE document_id = ?)",
                (document_id,),
            )
            await db.commit()
            deleted = cursor.rowcount
        logger.info("embeddings_deleted", document_id=document_id, deleted=deleted)
        return deleted

    async def count(self, notebook_id: str | None = None) -> int:
        async with connect(self._db_path) as db:
            if notebook_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM embeddings")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM embeddings e JOIN chunks c ON c.id = e.chunk_id "
                    "WHERE c.notebook_id = ?",
                    (notebook_id,),
                )
            (total,) = await cursor.fetchone()
        return total

    def get_provider_name(self) -> str:
        return "sqlite"


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of *matrix* with *query*; zero vectors score 0."""
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    safe_norms = np.where(row_norms == 0, 1.0, row_norms)
    scores = (matrix @ query) / (safe_norms * query_norm)
    scores = np.where(row_norms == 0, 0.0, scores)
    return np.clip(scores.astype(np.float64), -1.0, 1.0)

"""Unit tests for the ChromaDB vector store against a temporary persistent client."""

from __future__ import annotations

from pathlib import Path

import pytest

from notebookrag.models.document import Document
from notebookrag.models.rag import EmbeddingRecord
from notebookrag.providers.vector_store.chromadb_provider import ChromaDBVectorStore
from notebookrag.services.ingestion.chunker import TextChunker
from notebookrag.services.ingestion.embedding_generator import EmbeddingGenerator
from notebookrag.services.retriever import VectorRetriever
from notebookrag.utils.errors import ConsistencyError
from tests.conftest import FakeEmbeddingProvider

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
async def chroma_store(tmp_path: Path, document_store) -> ChromaDBVectorStore:
    store = ChromaDBVectorStore(document_store, persist_directory=str(tmp_path / "chroma"))
    await store.initialize()
    return store


async def _index(document_store, store, document_id: str, notebook_id: str, text: str):
    await document_store.add_document(Document(id=document_id, notebook_id=notebook_id, text=text))
    chunks = TextChunker(chunk_size=80, overlap=0.0, lookahead=30).chunk(
        document_id, text, notebook_id=notebook_id
    )
    await document_store.add_chunks(chunks)
    generator = EmbeddingGenerator(FakeEmbeddingProvider(), store, backoff_base=0.0)
    await generator.generate(chunks)
    return generator, chunks


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestChromaDBVectorStore:
    @pytest.mark.asyncio
    async def test_scoped_query_and_count(self, document_store, chroma_store) -> None:
        generator, chunks = await _index(
            document_store,
            chroma_store,
            "doc-a",
            "nb-a",
            "The railway station is 600 metres away.\n\nFlood risk caused the 2021 refusal.",
        )
        await _index(document_store, chroma_store, "doc-b", "nb-b", "The railway station for nb-b.")
        retriever = VectorRetriever(generator, chroma_store, default_threshold=0.0)

        results = await retriever.retrieve("railway station", notebook_id="nb-a")

        assert {r.chunk.document_id for r in results} == {"doc-a"}
        assert "railway" in results[0].chunk.text
        assert await chroma_store.count("nb-a") == len(chunks)
        assert await chroma_store.count() == len(chunks) + 1

    @pytest.mark.asyncio
    async def test_content_hashes_allow_skipping(self, document_store, chroma_store) -> None:
        generator, chunks = await _index(document_store, chroma_store, "doc-a", "nb-1", "Harbour wall.")

        hashes = await chroma_store.get_content_hashes([c.id for c in chunks], generator.model_label)
        again = await generator.generate(chunks)

        assert hashes == {c.id: c.content_hash for c in chunks}
        assert again.embedded_ids == []

    @pytest.mark.asyncio
    async def test_metadata_filter(self, document_store, chroma_store) -> None:
        generator, _ = await _index(document_store, chroma_store, "doc-a", "nb-1", "Harbour flood report.")
        await _index(document_store, chroma_store, "doc-b", "nb-1", "Harbour flood appeal.")
        await document_store.update_metadata("doc-a", {"type": "Report"}, {}, [])
        await document_store.update_metadata("doc-b", {"type": "Appeal"}, {}, [])
        retriever = VectorRetriever(generator, chroma_store, default_threshold=0.0)

        results = await retriever.retrieve(
            "harbour flood", notebook_id="nb-1", metadata_filter={"type": "Appeal"}
        )

        assert [r.chunk.document_id for r in results] == ["doc-b"]

    @pytest.mark.asyncio
    async def test_delete_by_document(self, document_store, chroma_store) -> None:
        _, chunks = await _index(document_store, chroma_store, "doc-a", "nb-1", "Harbour wall survey.")

        assert await chroma_store.delete_by_document("doc-a") == len(chunks)
        assert await chroma_store.count("nb-1") == 0

    @pytest.mark.asyncio
    async def test_vectors_for_unknown_chunks_rejected(self, chroma_store) -> None:
        record = EmbeddingRecord(chunk_id="missing", model="fake-bow-64", vector=[1.0], content_hash="h")
        with pytest.raises(ConsistencyError):
            await chroma_store.upsert_embeddings([record])

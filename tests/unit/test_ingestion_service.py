"""Unit tests for the IngestionService - upload, job-driven ingestion and documents."""

from __future__ import annotations

import json

import pytest

from notebookrag.cli._factory import initialize_components
from notebookrag.models.document import DocumentStatus, FieldType, MetadataField
from notebookrag.models.job import JobState
from notebookrag.utils.errors import NotFoundError, ValidationError
from tests.conftest import FakeEmbeddingProvider, FakeLLM

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SCHEMA_FIELDS = [
    MetadataField(name="application_ref", required=True),
    MetadataField(name="units", field_type=FieldType.NUMBER),
]


async def _ingest(components, sample_text: str, notebook_id: str = "nb-1", filename: str = "site.md"):
    service = components["ingestion_service"]
    orchestrator = components["orchestrator"]
    job_id = await service.submit(notebook_id, filename, sample_text.encode("utf-8"))
    await orchestrator.run_until_idle()
    status = await orchestrator.status(job_id)
    return job_id, status


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_stores_document_and_queues_job(self, components, sample_text) -> None:
        service = components["ingestion_service"]
        job_id = await service.submit("nb-1", "site.md", sample_text.encode("utf-8"))

        status = await components["orchestrator"].status(job_id)
        documents = await service.list_documents("nb-1")
        assert status.state == JobState.QUEUED
        assert len(documents) == 1
        assert documents[0].status == DocumentStatus.PENDING
        assert documents[0].content_type == "text/markdown"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "notebook_id, filename, data",
        [
            ("", "a.txt", b"text"),
            ("nb-1", "a.txt", b""),
            ("nb-1", "a.docx", b"binary"),
            ("nb-1", "blank.txt", b"   \n  "),
        ],
    )
    async def test_invalid_uploads_rejected(self, components, notebook_id, filename, data) -> None:
        with pytest.raises(ValidationError):
            await components["ingestion_service"].submit(notebook_id, filename, data)


class TestIngestJob:
    @pytest.mark.asyncio
    async def test_document_is_chunked_and_embedded(self, components, sample_text) -> None:
        _, status = await _ingest(components, sample_text)

        assert status.state == JobState.SUCCEEDED
        result = status.result
        assert result["chunks_created"] > 1
        assert result["chunks_embedded"] == result["chunks_created"]
        assert result["failed_chunk_ids"] == []

        stats = await components["ingestion_service"].get_stats("nb-1")
        assert stats.total_documents == 1
        assert stats.total_chunks == result["chunks_created"]
        assert stats.total_embeddings == result["chunks_created"]
        assert stats.embedding_models == ["fake-bow-64"]

        document = await components["ingestion_service"].get_document(result["document_id"])
        assert document.status == DocumentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_required_metadata_is_null_and_ingestion_proceeds(
        self, components_factory, sample_text
    ) -> None:
        llm = FakeLLM(responder=lambda prompt: json.dumps({"units": "140 homes"}))
        components = components_factory(llm=llm)
        await initialize_components(components)
        await components["ingestion_service"].set_metadata_schema("nb-1", _SCHEMA_FIELDS)

        _, status = await _ingest(components, sample_text)

        assert status.state == JobState.SUCCEEDED
        assert "required field 'application_ref' missing" in status.result["metadata_warnings"]
        document = await components["ingestion_service"].get_document(status.result["document_id"])
        assert document.metadata == {"application_ref": None, "units": 140}
        assert document.status == DocumentStatus.COMPLETED
        assert status.result["chunks_embedded"] == status.result["chunks_created"]

    @pytest.mark.asyncio
    async def test_metadata_provider_outage_does_not_block_ingestion(
        self, components_factory, sample_text
    ) -> None:
        from notebookrag.utils.errors import ProviderFatalError

        llm = FakeLLM(failures={"Extract": ProviderFatalError(message="quota", provider_name="fake-llm")})
        components = components_factory(llm=llm)
        await initialize_components(components)
        await components["ingestion_service"].set_metadata_schema("nb-1", _SCHEMA_FIELDS)

        _, status = await _ingest(components, sample_text)

        assert status.state == JobState.SUCCEEDED
        document = await components["ingestion_service"].get_document(status.result["document_id"])
        assert document.metadata == {"application_ref": None, "units": None}

    @pytest.mark.asyncio
    async def test_partial_embedding_failure_retries_only_failed_chunks(
        self, components_factory, sample_text
    ) -> None:
        embedder = FakeEmbeddingProvider(fail_marker="Parking")
        components = components_factory(embedder=embedder)
        await initialize_components(components)
        service = components["ingestion_service"]
        orchestrator = components["orchestrator"]

        job_id = await service.submit("nb-1", "site.md", sample_text.encode("utf-8"))
        await orchestrator.run_once()
        calls_after_first_attempt = len(embedder.calls)
        await orchestrator.run_until_idle()

        status = await orchestrator.status(job_id)
        assert status.state == JobState.FAILED_FINAL
        assert status.error.kind == "PartialFailure"
        assert status.attempts == 3

        later_calls = embedder.calls[calls_after_first_attempt:]
        assert later_calls
        assert all(len(texts) == 1 and "Parking" in texts[0] for texts in later_calls)

        documents = await service.list_documents("nb-1")
        chunks = await components["document_store"].get_chunks(documents[0].id)
        assert documents[0].status == DocumentStatus.FAILED
        assert await components["vector_store"].count("nb-1") == len(chunks) - 1

    @pytest.mark.asyncio
    async def test_reingesting_same_document_makes_no_embedding_calls(
        self, components, fake_embedder, sample_text
    ) -> None:
        _, status = await _ingest(components, sample_text)
        calls = fake_embedder.call_count

        result = await components["ingestion_service"].ingest_document(status.result["document_id"])

        assert fake_embedder.call_count == calls
        assert result.chunks_embedded == 0
        assert result.chunks_skipped == result.chunks_created

    @pytest.mark.asyncio
    async def test_embed_job_reembeds_document(self, components, sample_text) -> None:
        _, status = await _ingest(components, sample_text)
        service = components["ingestion_service"]

        job_id = await service.submit_embed(status.result["document_id"])
        await components["orchestrator"].run_until_idle()

        embed_status = await components["orchestrator"].status(job_id)
        assert embed_status.state == JobState.SUCCEEDED
        assert embed_status.result["provider_calls"] == 0

    @pytest.mark.asyncio
    async def test_dedupe_returns_existing_document(
        self, components_factory, test_config, sample_text
    ) -> None:
        test_config["ingestion"]["dedupe_by_content_hash"] = True
        components = components_factory()
        await initialize_components(components)

        await _ingest(components, sample_text)
        _, second = await _ingest(components, sample_text)

        assert second.result["deduplicated"] is True
        assert len(await components["ingestion_service"].list_documents("nb-1")) == 1


class TestDocuments:
    @pytest.mark.asyncio
    async def test_delete_removes_chunks_and_embeddings(self, components, sample_text) -> None:
        _, status = await _ingest(components, sample_text)
        service = components["ingestion_service"]

        removed = await service.delete_document(status.result["document_id"])

        assert removed == status.result["chunks_created"]
        assert await components["vector_store"].count("nb-1") == 0
        with pytest.raises(NotFoundError):
            await service.get_document(status.result["document_id"])

    @pytest.mark.asyncio
    async def test_delete_unknown_document(self, components) -> None:
        with pytest.raises(NotFoundError):
            await components["ingestion_service"].delete_document("missing")

    @pytest.mark.asyncio
    async def test_schema_round_trip_and_duplicates(self, components) -> None:
        service = components["ingestion_service"]
        await service.set_metadata_schema("nb-1", _SCHEMA_FIELDS)

        schema = await service.get_metadata_schema("nb-1")
        assert schema.field_names() == ["application_ref", "units"]
        assert (await service.get_metadata_schema("nb-2")).fields == []

        with pytest.raises(ValidationError):
            await service.set_metadata_schema("nb-1", [_SCHEMA_FIELDS[0], _SCHEMA_FIELDS[0]])

    @pytest.mark.asyncio
    async def test_stats_across_notebooks(self, components, sample_text) -> None:
        await _ingest(components, sample_text, notebook_id="nb-1")
        await _ingest(components, sample_text, notebook_id="nb-2", filename="copy.md")

        stats = await components["ingestion_service"].get_stats()
        assert stats.total_documents == 2
        assert stats.total_embeddings == stats.total_chunks

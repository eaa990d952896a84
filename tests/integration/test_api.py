"""Integration tests for the FastAPI endpoints using TestClient.

The app is built around fake providers with the background worker pool
running, so uploads and report runs go through real jobs.
"""

from __future__ import annotations

import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from notebookrag.main import create_app
from tests.conftest import FakeLLM

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TERMINAL = {"succeeded", "failed_final", "cancelled"}


def _wait_for_job(client: TestClient, job_id: str, timeout: float = 10.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/jobs/{job_id}").json()
        if body["state"] in _TERMINAL:
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish within {timeout}s")


def _wait_for_report(client: TestClient, generation_id: str, timeout: float = 10.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/reports/{generation_id}").json()
        if body["generation"]["status"] not in {"pending", "running"}:
            return body
        time.sleep(0.05)
    raise AssertionError(f"report {generation_id} did not finish within {timeout}s")


def _upload(client: TestClient, sample_text: str, notebook_id: str = "nb-1") -> dict[str, Any]:
    response = client.post(
        f"/api/v1/notebooks/{notebook_id}/documents",
        files={"file": ("site.md", sample_text.encode("utf-8"), "text/markdown")},
    )
    assert response.status_code == 202
    return _wait_for_job(client, response.json()["job_id"])


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def client(components_factory, test_settings, llm) -> TestClient:
    settings = test_settings.model_copy(update={"start_workers": True})
    components = components_factory(llm=llm, settings=settings)
    with TestClient(create_app(components)) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health_reports_providers(self, client: TestClient) -> None:
        body = client.get("/api/v1/health").json()

        assert body["status"] == "ok"
        assert body["providers"]["llm"] == "fake-llm"
        assert body["providers"]["embedding"] == "fake-bow-64"
        assert body["workers_running"] is True


class TestDocuments:
    def test_upload_ingests_in_background(self, client: TestClient, sample_text: str) -> None:
        job = _upload(client, sample_text)

        assert job["state"] == "succeeded"
        assert job["kind"] == "ingest"
        documents = client.get("/api/v1/notebooks/nb-1/documents").json()
        assert documents["total"] == 1
        assert documents["documents"][0]["status"] == "completed"

        stats = client.get("/api/v1/notebooks/nb-1/stats").json()
        assert stats["total_chunks"] == stats["total_embeddings"] == job["result"]["chunks_created"]

    def test_unsupported_upload_is_400(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/notebooks/nb-1/documents",
            files={"file": ("slides.pptx", b"binary", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_unknown_document_is_404(self, client: TestClient) -> None:
        response = client.get("/api/v1/documents/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_delete_document(self, client: TestClient, sample_text: str) -> None:
        job = _upload(client, sample_text)
        document_id = job["result"]["document_id"]

        response = client.delete(f"/api/v1/documents/{document_id}")

        assert response.status_code == 200
        assert response.json()["chunks_deleted"] == job["result"]["chunks_created"]
        assert client.get(f"/api/v1/documents/{document_id}").status_code == 404

    def test_metadata_schema_round_trip(self, client: TestClient) -> None:
        fields = [{"name": "application_ref", "field_type": "text", "required": True}]

        put = client.put("/api/v1/notebooks/nb-1/metadata-schema", json={"fields": fields})
        got = client.get("/api/v1/notebooks/nb-1/metadata-schema")

        assert put.status_code == 200
        assert [f["name"] for f in got.json()["fields"]] == ["application_ref"]


class TestJobs:
    def test_unknown_job_is_404(self, client: TestClient) -> None:
        assert client.get("/api/v1/jobs/missing").status_code == 404

    def test_cancel_finished_job_is_noop(self, client: TestClient, sample_text: str) -> None:
        job = _upload(client, sample_text)

        response = client.post(f"/api/v1/jobs/{job['job_id']}/cancel")

        assert response.status_code == 200
        assert response.json()["state"] == "succeeded"

    def test_websocket_sends_snapshot(self, client: TestClient, sample_text: str) -> None:
        job = _upload(client, sample_text)

        with client.websocket_connect(f"/ws/jobs/{job['job_id']}") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "snapshot"
        assert message["data"]["state"] == "succeeded"


class TestSearch:
    def test_search_returns_ranked_chunks(self, client: TestClient, sample_text: str) -> None:
        _upload(client, sample_text)

        response = client.post(
            "/api/v1/notebooks/nb-1/search",
            json={"query": "railway station bus routes", "top_k": 2},
        )

        body = response.json()
        assert response.status_code == 200
        assert 1 <= body["total_results"] <= 2
        scores = [r["score"] for r in body["results"]]
        assert scores == sorted(scores, reverse=True)
        assert all(r["chunk"]["notebook_id"] == "nb-1" for r in body["results"])

    def test_other_notebook_sees_nothing(self, client: TestClient, sample_text: str) -> None:
        _upload(client, sample_text)

        body = client.post("/api/v1/notebooks/nb-2/search", json={"query": "railway"}).json()

        assert body["results"] == []

    def test_malformed_filter_is_400(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/notebooks/nb-1/search",
            json={"query": "railway", "metadata_filter": {"units": {"$regex": ".*"}}},
        )
        assert response.status_code == 400

    def test_background_batch_search(self, client: TestClient, sample_text: str) -> None:
        _upload(client, sample_text)

        response = client.post(
            "/api/v1/notebooks/nb-1/search/batch",
            json={"queries": ["railway station", "flood risk"], "background": True},
        )
        job = _wait_for_job(client, response.json()["job_id"])

        assert job["state"] == "succeeded"
        assert [r["query"] for r in job["result"]["results"]] == ["railway station", "flood risk"]


class TestReports:
    def test_report_run_with_failing_section(
        self, client: TestClient, llm: FakeLLM, sample_text: str
    ) -> None:
        from notebookrag.utils.errors import ProviderFatalError

        _upload(client, sample_text)
        llm.failures['section for "Transport"'] = ProviderFatalError(
            message="content policy rejection", provider_name="fake-llm"
        )
        template = client.post(
            "/api/v1/report-templates",
            json={"name": "Site appraisal", "sections": [{"name": "Site"}, {"name": "Transport"}]},
        ).json()

        started = client.post(
            "/api/v1/notebooks/nb-1/reports",
            json={"template_id": template["id"], "topic": "Harbour Road", "parallel": True},
        )
        report = _wait_for_report(client, started.json()["generation"]["id"])

        assert started.status_code == 202
        assert report["generation"]["status"] == "partial"
        failed = [s for s in report["sections"] if s["status"] == "failed"]
        assert [s["name"] for s in failed] == ["Transport"]

        llm.failures.clear()
        client.post(
            f"/api/v1/reports/{report['generation']['id']}/sections/{failed[0]['id']}/retry"
        )
        retried = _wait_for_report(client, report["generation"]["id"])
        assert retried["generation"]["status"] == "succeeded"


class TestChat:
    def test_chat_streams_and_persists(self, client: TestClient, sample_text: str) -> None:
        _upload(client, sample_text)

        response = client.post(
            "/api/v1/notebooks/nb-1/chat",
            json={"message": "How far away is the railway station?"},
        )

        assert response.status_code == 200
        assert response.text == "Generated text grounded in the context [1]."
        session_id = response.headers["x-session-id"]

        messages = client.get(f"/api/v1/chat/sessions/{session_id}/messages").json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["content"] == response.text
        assert messages[1]["citations"]

        sessions = client.get("/api/v1/notebooks/nb-1/chat/sessions").json()
        assert [s["id"] for s in sessions] == [session_id]

    def test_empty_message_is_422(self, client: TestClient) -> None:
        response = client.post("/api/v1/notebooks/nb-1/chat", json={"message": ""})
        assert response.status_code == 422

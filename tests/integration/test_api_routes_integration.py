import pytest

from knowledge_service.services.connectors.base import SyncableContent
from knowledge_service.services.embedding_index import EmbeddingIndex
from tests.fakes import FailingEmbeddingProvider, build_orchestrator


@pytest.fixture()
def api():
    from fastapi.testclient import TestClient

    from knowledge_service.api.routes import get_embedding_index, get_repository
    from knowledge_service.main import app

    repo, index, orchestrator = build_orchestrator()
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_embedding_index] = lambda: index
    try:
        yield TestClient(app), repo, orchestrator
    finally:
        app.dependency_overrides.clear()


def _post_job(client, **overrides):
    body = {"type": "ingest", "user_id": "user-1", "payload": {"files": [{"filename": "a.txt", "content": "hello"}]}}
    body.update(overrides)
    return client.post("/v1/jobs", json=body)


def test_health_echoes_request_id(api):
    client, _, _ = api

    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/v1/health").status_code == 200


def test_enqueue_and_read_job_status(api):
    client, _, _ = api

    created = _post_job(client, workspace_id="ws-1", idempotency_key="upload-1")
    assert created.status_code == 202
    job = created.json()
    assert job["status"] == "pending"
    assert job["workspace_id"] == "ws-1"
    assert job["max_attempts"] == 3

    again = _post_job(client, workspace_id="ws-1", idempotency_key="upload-1")
    assert again.json()["id"] == job["id"]

    status = client.get(f"/v1/jobs/{job['id']}")
    assert status.status_code == 200
    assert status.json()["job"]["id"] == job["id"]
    assert status.json()["runs"] == []


def test_invalid_job_type_is_rejected(api):
    client, _, _ = api

    assert _post_job(client, type="reindex").status_code == 422


def test_missing_job_returns_error_envelope(api):
    client, _, _ = api

    response = client.get("/v1/jobs/nope", headers={"X-Request-ID": "req-404"})

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "D-JOB-NOT-FOUND"
    assert error["correlation_id"] == "req-404"
    assert error["retryable"] is False


def test_dead_letter_listing_and_operator_retry(api):
    client, repo, _ = api
    job_id = _post_job(client).json()["id"]
    repo.update_job(job_id, status="dead_letter", attempts=3, last_error="boom", last_error_code="C-HTTP-404")

    listing = client.get("/v1/jobs/dead-letter").json()["jobs"]
    assert [entry["job"]["id"] for entry in listing] == [job_id]
    assert listing[0]["last_error_code"] == "C-HTTP-404"
    assert listing[0]["attempts"] == 3

    retried = client.post(f"/v1/jobs/{job_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"
    assert retried.json()["attempts"] == 0

    conflict = client.post(f"/v1/jobs/{job_id}/retry")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "J-RETRY-INVALID-STATUS"
    assert client.post("/v1/jobs/nope/retry").status_code == 404


def test_retrieve_returns_chunks_and_diagnostics(api):
    client, _, orchestrator = api
    orchestrator.ingest_document(
        workspace_id="ws-1",
        user_id="user-1",
        source_type="upload",
        content=SyncableContent(external_id="benefits", title="Benefits", content="Dental coverage starts after 30 days."),
    )

    response = client.post(
        "/v1/retrieve",
        json={"query": "dental coverage", "workspace_id": "ws-1", "requester_user_id": "user-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["chunks"][0]["title"] == "Benefits"
    assert body["chunks"][0]["source_type"] == "upload"
    assert body["diagnostics"]["workspace_id_used"] == "ws-1"
    assert "decision" in body["diagnostics"]


def test_retrieve_reports_embedding_outage_as_503(api):
    from knowledge_service.api.routes import get_embedding_index
    from knowledge_service.main import app

    client, repo, orchestrator = api
    orchestrator.ingest_document(
        workspace_id="ws-1",
        user_id="user-1",
        source_type="upload",
        content=SyncableContent(external_id="doc", title="Doc", content="Some text."),
    )
    app.dependency_overrides[get_embedding_index] = lambda: EmbeddingIndex(
        FailingEmbeddingProvider(), active_chunk_loader=repo.list_active_chunks
    )

    response = client.post("/v1/retrieve", json={"query": "text", "workspace_id": "ws-1", "requester_user_id": "user-1"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "S-EMB-INDEX-FAILED"
    assert response.json()["error"]["retryable"] is True


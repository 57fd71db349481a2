import pytest

from knowledge_service.db.memory_repository import InMemoryCorpusRepository
from knowledge_service.db.repository import RepositoryError
from knowledge_service.workers.queue import (
    build_idempotency_key,
    compute_backoff,
    enqueue_job,
    enqueue_scope_sync,
    job_status,
    list_dead_letter_jobs,
    retry_dead_letter_job,
)
from tests.fakes import T0, make_scope


def test_compute_backoff_doubles_and_caps():
    assert compute_backoff(1, base_seconds=1, max_seconds=1800) == 2.0
    assert compute_backoff(2, base_seconds=1, max_seconds=1800) == 4.0
    assert compute_backoff(3, base_seconds=1, max_seconds=1800) == 8.0
    assert compute_backoff(20, base_seconds=1, max_seconds=1800) == 1800.0


def test_build_idempotency_key_buckets_time():
    key = build_idempotency_key("scope-1", "sync", bucket_seconds=300, now=T0)

    assert key == f"scope-1:sync:{int(T0.timestamp()) // 300}"


def test_enqueue_job_defaults():
    repo = InMemoryCorpusRepository()

    job = enqueue_job(repo, job_type="ingest", user_id="user-1", payload={"files": []})

    assert job.status == "pending"
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.workspace_id == "user-1"
    assert repo.get_job(job.id) == job


def test_enqueue_job_rejects_unknown_type():
    with pytest.raises(ValueError):
        enqueue_job(InMemoryCorpusRepository(), job_type="reindex", user_id="u", payload={})


def test_enqueue_job_is_idempotent_by_key():
    repo = InMemoryCorpusRepository()

    first = enqueue_job(repo, job_type="sync", user_id="u", payload={}, idempotency_key="k1")
    second = enqueue_job(repo, job_type="sync", user_id="u", payload={"other": True}, idempotency_key="k1")

    assert second.id == first.id
    assert len(repo.list_jobs_by_status("pending")) == 1


def test_enqueue_scope_sync_collapses_within_bucket():
    repo = InMemoryCorpusRepository()
    scope = make_scope(connector_type="atlassian")

    first = enqueue_scope_sync(repo, scope, now=T0, use_confluence=True)
    second = enqueue_scope_sync(repo, scope, now=T0.replace(second=30))

    assert first.id == second.id
    assert first.connector_type == "atlassian"
    assert first.input["account_id"] == "acct-1"
    assert first.input["use_confluence"] is True
    assert first.next_run_at == T0


def test_dead_letter_listing_and_operator_retry():
    repo = InMemoryCorpusRepository()
    job = enqueue_job(repo, job_type="ingest", user_id="u", payload={})
    repo.update_job(job.id, status="dead_letter", attempts=3, last_error="boom", last_error_code="S-INGEST-EMPTY", completed_at=T0)

    listed = list_dead_letter_jobs(repo)
    assert [entry["job"].id for entry in listed] == [job.id]
    assert listed[0]["last_error_code"] == "S-INGEST-EMPTY"

    retried = retry_dead_letter_job(repo, job.id, now=T0)
    assert retried.status == "pending"
    assert retried.attempts == 0
    assert retried.completed_at is None
    assert retried.next_run_at == T0
    assert list_dead_letter_jobs(repo) == []


def test_retry_rejects_missing_and_active_jobs():
    repo = InMemoryCorpusRepository()
    job = enqueue_job(repo, job_type="ingest", user_id="u", payload={})

    with pytest.raises(RepositoryError) as missing:
        retry_dead_letter_job(repo, "nope")
    assert missing.value.error_code == "D-JOB-NOT-FOUND"

    with pytest.raises(RepositoryError) as active:
        retry_dead_letter_job(repo, job.id)
    assert active.value.error_code == "J-RETRY-INVALID-STATUS"


def test_job_status_returns_runs():
    repo = InMemoryCorpusRepository()
    job = enqueue_job(repo, job_type="ingest", user_id="u", payload={})

    assert job_status(repo, "missing") is None
    found, runs = job_status(repo, job.id)
    assert found.id == job.id
    assert runs == []

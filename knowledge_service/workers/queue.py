from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from knowledge_service.core.config import settings
from knowledge_service.db.entities import JOB_TYPES, Job, JobRun, SyncScope, new_id, utcnow
from knowledge_service.db.repository import CorpusRepository, RepositoryError

LOGGER = logging.getLogger(__name__)

RETRYABLE_OPERATOR_STATUSES = ("dead_letter", "failed")


def compute_backoff(attempts: int, *, base_seconds: float | None = None, max_seconds: float | None = None) -> float:
    """Seconds to wait before the next attempt once ``attempts`` attempts have failed."""
    base = settings.JOB_BACKOFF_BASE_SECONDS if base_seconds is None else base_seconds
    cap = settings.JOB_BACKOFF_MAX_SECONDS if max_seconds is None else max_seconds
    return float(min(base * (2**attempts), cap))


def build_idempotency_key(scope_id: str, operation: str, bucket_seconds: int | None = None, now: datetime | None = None) -> str:
    bucket_seconds = bucket_seconds or settings.JOB_IDEMPOTENCY_BUCKET_SECONDS
    now = now or utcnow()
    bucket = int(now.timestamp()) // bucket_seconds
    return f"{scope_id}:{operation}:{bucket}"


def enqueue_job(
    repo: CorpusRepository,
    *,
    job_type: str,
    user_id: str,
    payload: dict[str, Any],
    workspace_id: str | None = None,
    connector_type: str | None = None,
    scope_id: str | None = None,
    idempotency_key: str | None = None,
    priority: int = 0,
    max_attempts: int | None = None,
    run_at: datetime | None = None,
) -> Job:
    if job_type not in JOB_TYPES:
        raise ValueError(f"Unsupported job type: {job_type}")
    if idempotency_key:
        existing = repo.get_job_by_idempotency_key(idempotency_key)
        if existing is not None:
            LOGGER.info("job_enqueue_deduplicated", extra={"job_id": existing.id, "idempotency_key": idempotency_key})
            return existing

    now = utcnow()
    job = repo.create_job(
        Job(
            id=new_id(),
            type=job_type,
            user_id=user_id,
            workspace_id=workspace_id or user_id,
            connector_type=connector_type,
            scope_id=scope_id,
            input=dict(payload),
            idempotency_key=idempotency_key,
            priority=priority,
            max_attempts=max_attempts or settings.JOB_DEFAULT_MAX_ATTEMPTS,
            next_run_at=run_at or now,
            created_at=now,
            updated_at=now,
        )
    )
    LOGGER.info("job_enqueued", extra={"job_id": job.id, "job_type": job.type, "connector_type": connector_type})
    return job


def enqueue_scope_sync(
    repo: CorpusRepository,
    scope: SyncScope,
    now: datetime | None = None,
    *,
    use_confluence: bool = False,
) -> Job:
    """Queue a sync of ``scope``; saves within one time bucket collapse to a single job."""
    return enqueue_job(
        repo,
        job_type="sync",
        user_id=scope.user_id,
        workspace_id=scope.workspace_id,
        connector_type=scope.connector_type,
        scope_id=scope.id,
        payload={
            "scope_id": scope.id,
            "user_id": scope.user_id,
            "connector_type": scope.connector_type,
            "account_id": scope.account_id,
            "use_confluence": use_confluence,
        },
        idempotency_key=build_idempotency_key(scope.id, "sync", now=now),
        run_at=now,
    )


def list_dead_letter_jobs(repo: CorpusRepository) -> list[dict[str, Any]]:
    return [
        {
            "job": job,
            "last_error": job.last_error,
            "last_error_code": job.last_error_code,
            "runs": repo.list_job_runs(job.id),
        }
        for job in repo.list_jobs_by_status("dead_letter")
    ]


def retry_dead_letter_job(repo: CorpusRepository, job_id: str, now: datetime | None = None) -> Job:
    job = repo.get_job(job_id)
    if job is None:
        raise RepositoryError("D-JOB-NOT-FOUND", f"Job {job_id} not found")
    if job.status not in RETRYABLE_OPERATOR_STATUSES:
        raise RepositoryError("J-RETRY-INVALID-STATUS", f"Job {job_id} is {job.status}; only dead_letter or failed jobs can be retried")
    retried = repo.update_job(
        job_id,
        status="pending",
        attempts=0,
        locked_by=None,
        locked_at=None,
        next_run_at=now or utcnow(),
        completed_at=None,
    )
    LOGGER.info("job_retry_requested", extra={"job_id": job_id, "previous_status": job.status})
    return retried


def job_status(repo: CorpusRepository, job_id: str) -> tuple[Job, list[JobRun]] | None:
    job = repo.get_job(job_id)
    if job is None:
        return None
    return job, repo.list_job_runs(job_id)

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from knowledge_service.db.entities import (
    AuditEvent,
    Chunk,
    ConcurrencySlot,
    Job,
    JobRun,
    RateLimitBucket,
    Source,
    SourceVersion,
    SyncScope,
)


class RepositoryError(RuntimeError):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retryable = False


class CorpusRepository(Protocol):
    """Storage contract shared by the job queue, sync orchestrator and retrieval."""

    # jobs
    def get_job_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        ...

    def create_job(self, job: Job) -> Job:
        """Insert ``job``; on an idempotency key conflict return the existing row."""
        ...

    def get_job(self, job_id: str) -> Job | None:
        ...

    def update_job(self, job_id: str, **changes: Any) -> Job:
        ...

    def claim_next_job(self, worker_id: str, now: datetime) -> Job | None:
        """Atomically lock the highest-priority due pending job for ``worker_id``."""
        ...

    def release_job(self, job_id: str, worker_id: str, next_run_at: datetime) -> Job | None:
        """Return a claimed job to pending without counting an attempt."""
        ...

    def finish_job(self, job_id: str, worker_id: str, **changes: Any) -> Job | None:
        """Apply the final write of an attempt only while ``worker_id`` still holds the lock."""
        ...

    def list_stale_running_jobs(self, locked_before: datetime) -> list[Job]:
        ...

    def unlock_stale_job(self, job_id: str, expected_worker_id: str | None) -> bool:
        ...

    def list_jobs_by_status(self, status: str) -> list[Job]:
        ...

    def create_job_run(self, run: JobRun) -> JobRun:
        ...

    def update_job_run(self, run_id: str, **changes: Any) -> JobRun:
        ...

    def list_job_runs(self, job_id: str) -> list[JobRun]:
        ...

    # admission control
    def try_acquire_concurrency_slot(self, connector_type: str, account_id: str, default_max: int) -> bool:
        ...

    def release_concurrency_slot(self, connector_type: str, account_id: str) -> None:
        ...

    def get_concurrency_slot(self, connector_type: str, account_id: str) -> ConcurrencySlot | None:
        ...

    def consume_rate_limit_token(
        self,
        account_id: str,
        connector_type: str,
        *,
        max_tokens: float,
        refill_rate: float,
        now: datetime,
    ) -> bool:
        ...

    def get_rate_limit_bucket(self, account_id: str, connector_type: str) -> RateLimitBucket | None:
        ...

    # corpus
    def list_sources_by_user_and_type(self, user_id: str, source_type: str) -> list[Source]:
        ...

    def list_sources_by_workspace(self, workspace_id: str) -> list[Source]:
        ...

    def get_source(self, source_id: str) -> Source | None:
        ...

    def upsert_source(self, source: Source) -> tuple[Source, bool]:
        """Upsert by (workspace_id, external_id, type); the flag is True on insert.

        A ``content_hash`` or ``full_text`` of None keeps the stored value.
        """
        ...

    def delete_source(self, source_id: str) -> list[str]:
        """Delete a source with its versions and chunks, returning the chunk ids removed."""
        ...

    def list_source_versions(self, source_id: str) -> list[SourceVersion]:
        """Versions of a source, newest first."""
        ...

    def get_active_source_version(self, source_id: str) -> SourceVersion | None:
        ...

    def create_version_with_chunks(self, version: SourceVersion, chunks: Iterable[Chunk]) -> SourceVersion:
        """Deactivate every version of the source and persist ``version`` as active with its chunks."""
        ...

    def list_active_source_versions(self, workspace_id: str) -> list[SourceVersion]:
        ...

    def list_chunks_by_source(self, source_id: str) -> list[Chunk]:
        ...

    def list_chunks_for_versions(self, version_ids: Iterable[str]) -> list[Chunk]:
        ...

    def list_active_chunks(self) -> list[Chunk]:
        ...

    # scopes and audit
    def get_sync_scope(self, scope_id: str) -> SyncScope | None:
        ...

    def save_sync_scope(self, scope: SyncScope) -> SyncScope:
        ...

    def create_audit_event(self, event: AuditEvent) -> AuditEvent:
        ...

    def list_audit_events(self, kind: str | None = None) -> list[AuditEvent]:
        ...

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

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
    utcnow,
)
from knowledge_service.db.repository import RepositoryError


class InMemoryCorpusRepository:
    """Thread-safe in-process store; every compare-and-set runs under one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._job_runs: dict[str, JobRun] = {}
        self._slots: dict[tuple[str, str], ConcurrencySlot] = {}
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}
        self._sources: dict[str, Source] = {}
        self._versions: dict[str, SourceVersion] = {}
        self._chunks: dict[str, Chunk] = {}
        self._scopes: dict[str, SyncScope] = {}
        self._audit_events: list[AuditEvent] = []

    # jobs
    def get_job_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        with self._lock:
            for job in self._jobs.values():
                if job.idempotency_key == idempotency_key:
                    return job
            return None

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.idempotency_key:
                existing = self.get_job_by_idempotency_key(job.idempotency_key)
                if existing is not None:
                    return existing
            self._jobs[job.id] = job
            return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def update_job(self, job_id: str, **changes: Any) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise RepositoryError("D-JOB-NOT-FOUND", f"Job {job_id} not found")
            changes.setdefault("updated_at", utcnow())
            updated = replace(job, **changes)
            self._jobs[job_id] = updated
            return updated

    def claim_next_job(self, worker_id: str, now: datetime) -> Job | None:
        with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if job.status == "pending" and job.locked_by is None and job.next_run_at <= now
            ]
            if not due:
                return None
            due.sort(key=lambda job: (-job.priority, job.next_run_at, job.created_at))
            claimed = replace(due[0], status="running", locked_by=worker_id, locked_at=now, updated_at=now)
            self._jobs[claimed.id] = claimed
            return claimed

    def release_job(self, job_id: str, worker_id: str, next_run_at: datetime) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.locked_by != worker_id:
                return None
            released = replace(job, status="pending", locked_by=None, locked_at=None, next_run_at=next_run_at, updated_at=utcnow())
            self._jobs[job_id] = released
            return released

    def finish_job(self, job_id: str, worker_id: str, **changes: Any) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.locked_by != worker_id:
                return None
            changes.setdefault("updated_at", utcnow())
            finished = replace(job, **changes)
            self._jobs[job_id] = finished
            return finished

    def list_stale_running_jobs(self, locked_before: datetime) -> list[Job]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if job.status == "running" and job.locked_at is not None and job.locked_at < locked_before
            ]

    def unlock_stale_job(self, job_id: str, expected_worker_id: str | None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "running" or job.locked_by != expected_worker_id:
                return False
            self._jobs[job_id] = replace(job, status="pending", locked_by=None, locked_at=None, updated_at=utcnow())
            return True

    def list_jobs_by_status(self, status: str) -> list[Job]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.status == status]
        return sorted(jobs, key=lambda job: job.updated_at, reverse=True)

    def create_job_run(self, run: JobRun) -> JobRun:
        with self._lock:
            self._job_runs[run.id] = run
            return run

    def update_job_run(self, run_id: str, **changes: Any) -> JobRun:
        with self._lock:
            run = self._job_runs.get(run_id)
            if run is None:
                raise RepositoryError("D-JOB-RUN-NOT-FOUND", f"Job run {run_id} not found")
            updated = replace(run, **changes)
            self._job_runs[run_id] = updated
            return updated

    def list_job_runs(self, job_id: str) -> list[JobRun]:
        with self._lock:
            runs = [run for run in self._job_runs.values() if run.job_id == job_id]
        return sorted(runs, key=lambda run: run.attempt_number)

    # admission control
    def try_acquire_concurrency_slot(self, connector_type: str, account_id: str, default_max: int) -> bool:
        key = (connector_type, account_id)
        with self._lock:
            slot = self._slots.get(key) or ConcurrencySlot(connector_type, account_id, 0, default_max)
            if slot.active_count >= slot.max_concurrency:
                self._slots[key] = slot
                return False
            self._slots[key] = replace(slot, active_count=slot.active_count + 1)
            return True

    def release_concurrency_slot(self, connector_type: str, account_id: str) -> None:
        key = (connector_type, account_id)
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and slot.active_count > 0:
                self._slots[key] = replace(slot, active_count=slot.active_count - 1)

    def get_concurrency_slot(self, connector_type: str, account_id: str) -> ConcurrencySlot | None:
        with self._lock:
            return self._slots.get((connector_type, account_id))

    def consume_rate_limit_token(
        self,
        account_id: str,
        connector_type: str,
        *,
        max_tokens: float,
        refill_rate: float,
        now: datetime,
    ) -> bool:
        key = (account_id, connector_type)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(account_id, connector_type, max_tokens, max_tokens, refill_rate, now)
            elapsed = max(0.0, (now - bucket.last_refill).total_seconds())
            tokens = min(bucket.max_tokens, bucket.tokens + elapsed * bucket.refill_rate)
            if tokens < 1:
                self._buckets[key] = replace(bucket, tokens=tokens, last_refill=now)
                return False
            self._buckets[key] = replace(bucket, tokens=tokens - 1, last_refill=now)
            return True

    def get_rate_limit_bucket(self, account_id: str, connector_type: str) -> RateLimitBucket | None:
        with self._lock:
            return self._buckets.get((account_id, connector_type))

    # corpus
    def list_sources_by_user_and_type(self, user_id: str, source_type: str) -> list[Source]:
        with self._lock:
            return [s for s in self._sources.values() if s.user_id == user_id and s.type == source_type]

    def list_sources_by_workspace(self, workspace_id: str) -> list[Source]:
        with self._lock:
            return [s for s in self._sources.values() if s.workspace_id == workspace_id]

    def get_source(self, source_id: str) -> Source | None:
        with self._lock:
            return self._sources.get(source_id)

    def upsert_source(self, source: Source) -> tuple[Source, bool]:
        with self._lock:
            for existing in self._sources.values():
                if (
                    existing.workspace_id == source.workspace_id
                    and existing.external_id == source.external_id
                    and existing.type == source.type
                ):
                    updated = replace(
                        existing,
                        title=source.title,
                        url=source.url,
                        visibility=source.visibility,
                        content_hash=existing.content_hash if source.content_hash is None else source.content_hash,
                        full_text=existing.full_text if source.full_text is None else source.full_text,
                        metadata=dict(source.metadata),
                        updated_at=utcnow(),
                    )
                    self._sources[existing.id] = updated
                    return updated, False
            self._sources[source.id] = source
            return source, True

    def delete_source(self, source_id: str) -> list[str]:
        with self._lock:
            self._sources.pop(source_id, None)
            for version_id in [v.id for v in self._versions.values() if v.source_id == source_id]:
                del self._versions[version_id]
            removed = [c.id for c in self._chunks.values() if c.source_id == source_id]
            for chunk_id in removed:
                del self._chunks[chunk_id]
            return removed

    def list_source_versions(self, source_id: str) -> list[SourceVersion]:
        with self._lock:
            versions = [v for v in self._versions.values() if v.source_id == source_id]
        return sorted(versions, key=lambda v: v.version, reverse=True)

    def get_active_source_version(self, source_id: str) -> SourceVersion | None:
        with self._lock:
            for version in self._versions.values():
                if version.source_id == source_id and version.is_active:
                    return version
            return None

    def create_version_with_chunks(self, version: SourceVersion, chunks: Iterable[Chunk]) -> SourceVersion:
        chunks = list(chunks)
        with self._lock:
            if any(v.source_id == version.source_id and v.version == version.version for v in self._versions.values()):
                raise RepositoryError(
                    "D-VERSION-CONFLICT",
                    f"Version {version.version} already exists for source {version.source_id}",
                )
            for existing in list(self._versions.values()):
                if existing.source_id == version.source_id and existing.is_active:
                    self._versions[existing.id] = replace(existing, is_active=False)
            active = replace(version, is_active=True)
            self._versions[active.id] = active
            for chunk in chunks:
                self._chunks[chunk.id] = chunk
            return active

    def list_active_source_versions(self, workspace_id: str) -> list[SourceVersion]:
        with self._lock:
            return [v for v in self._versions.values() if v.workspace_id == workspace_id and v.is_active]

    def list_chunks_by_source(self, source_id: str) -> list[Chunk]:
        with self._lock:
            chunks = [c for c in self._chunks.values() if c.source_id == source_id]
        return sorted(chunks, key=lambda c: (c.source_version_id, c.chunk_index))

    def list_chunks_for_versions(self, version_ids: Iterable[str]) -> list[Chunk]:
        wanted = set(version_ids)
        with self._lock:
            chunks = [c for c in self._chunks.values() if c.source_version_id in wanted]
        return sorted(chunks, key=lambda c: (c.source_id, c.chunk_index))

    def list_active_chunks(self) -> list[Chunk]:
        with self._lock:
            active = {v.id for v in self._versions.values() if v.is_active}
            return [c for c in self._chunks.values() if c.source_version_id in active]

    # scopes and audit
    def get_sync_scope(self, scope_id: str) -> SyncScope | None:
        with self._lock:
            return self._scopes.get(scope_id)

    def save_sync_scope(self, scope: SyncScope) -> SyncScope:
        with self._lock:
            self._scopes[scope.id] = scope
            return scope

    def create_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            self._audit_events.append(event)
            return event

    def list_audit_events(self, kind: str | None = None) -> list[AuditEvent]:
        with self._lock:
            return [e for e in self._audit_events if kind is None or e.kind == kind]

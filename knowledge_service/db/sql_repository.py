from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

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
from knowledge_service.db.models import (
    AuditEvents,
    Chunks,
    JobLocks,
    JobRuns,
    Jobs,
    RateLimitBuckets,
    SourceVersions,
    Sources,
    SyncScopes,
)
from knowledge_service.db.repository import RepositoryError
from knowledge_service.db.session import Base, session_scope

LOGGER = logging.getLogger(__name__)

_JOB_FIELDS = (
    "id", "type", "user_id", "workspace_id", "connector_type", "scope_id", "input", "output", "idempotency_key",
    "priority", "status", "attempts", "max_attempts", "locked_by", "locked_at", "next_run_at", "completed_at",
    "created_at", "updated_at", "last_error", "last_error_code",
)
_JOB_RUN_FIELDS = ("id", "job_id", "attempt_number", "status", "started_at", "finished_at", "stats", "error", "error_code")


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _job_entity(row: Jobs) -> Job:
    return Job(
        id=row.id,
        type=row.type,
        user_id=row.user_id,
        workspace_id=row.workspace_id,
        connector_type=row.connector_type,
        scope_id=row.scope_id,
        input=dict(row.input or {}),
        output=dict(row.output) if row.output is not None else None,
        idempotency_key=row.idempotency_key,
        priority=row.priority,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        locked_by=row.locked_by,
        locked_at=_as_utc(row.locked_at),
        next_run_at=_as_utc(row.next_run_at),
        completed_at=_as_utc(row.completed_at),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        last_error=row.last_error,
        last_error_code=row.last_error_code,
    )


def _job_run_entity(row: JobRuns) -> JobRun:
    return JobRun(
        id=row.id,
        job_id=row.job_id,
        attempt_number=row.attempt_number,
        status=row.status,
        started_at=_as_utc(row.started_at),
        finished_at=_as_utc(row.finished_at),
        stats=dict(row.stats or {}),
        error=row.error,
        error_code=row.error_code,
    )


def _source_entity(row: Sources) -> Source:
    return Source(
        id=row.id,
        workspace_id=row.workspace_id,
        user_id=row.user_id,
        created_by_user_id=row.created_by_user_id,
        type=row.type,
        external_id=row.external_id,
        title=row.title,
        visibility=row.visibility,
        url=row.url,
        content_hash=row.content_hash,
        full_text=row.full_text,
        metadata=dict(row.metadata_json or {}),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _version_entity(row: SourceVersions) -> SourceVersion:
    return SourceVersion(
        id=row.id,
        workspace_id=row.workspace_id,
        source_id=row.source_id,
        version=row.version,
        content_hash=row.content_hash,
        full_text=row.full_text,
        is_active=row.is_active,
        char_count=row.char_count,
        token_estimate=row.token_estimate,
        created_at=_as_utc(row.created_at),
    )


def _chunk_entity(row: Chunks) -> Chunk:
    return Chunk(
        id=row.id,
        workspace_id=row.workspace_id,
        source_id=row.source_id,
        source_version_id=row.source_version_id,
        user_id=row.user_id,
        chunk_index=row.chunk_index,
        text=row.text,
        char_start=row.char_start,
        char_end=row.char_end,
        token_estimate=row.token_estimate,
        metadata=dict(row.metadata_json or {}),
        created_at=_as_utc(row.created_at),
    )


def _scope_entity(row: SyncScopes) -> SyncScope:
    return SyncScope(
        id=row.id,
        user_id=row.user_id,
        workspace_id=row.workspace_id,
        account_id=row.account_id,
        connector_type=row.connector_type,
        sync_mode=row.sync_mode,
        content_strategy=row.content_strategy,
        scope_config=dict(row.scope_config or {}),
        exclusion_rules=list(row.exclusion_rules or []),
        created_at=_as_utc(row.created_at),
    )


def _audit_entity(row: AuditEvents) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        kind=row.kind,
        request_id=row.request_id,
        user_id=row.user_id,
        success=row.success,
        error=row.error,
        payload=dict(row.payload or {}),
        created_at=_as_utc(row.created_at),
    )


class SqlCorpusRepository:
    """SQLAlchemy-backed repository; each method runs in its own transaction."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create_schema(self) -> None:
        bind = self.session_factory.kw.get("bind")
        Base.metadata.create_all(bind)

    # jobs
    def get_job_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        with self.session_factory() as db:
            row = db.execute(select(Jobs).where(Jobs.idempotency_key == idempotency_key)).scalar_one_or_none()
            return _job_entity(row) if row else None

    def create_job(self, job: Job) -> Job:
        with self.session_factory() as db:
            db.add(Jobs(**{name: getattr(job, name) for name in _JOB_FIELDS}))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if job.idempotency_key:
                    existing = self.get_job_by_idempotency_key(job.idempotency_key)
                    if existing is not None:
                        return existing
                raise
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self.session_factory() as db:
            row = db.get(Jobs, job_id)
            return _job_entity(row) if row else None

    def update_job(self, job_id: str, **changes: Any) -> Job:
        changes.setdefault("updated_at", utcnow())
        with self.session_factory() as db:
            row = db.get(Jobs, job_id)
            if row is None:
                raise RepositoryError("D-JOB-NOT-FOUND", f"Job {job_id} not found")
            for name, value in changes.items():
                setattr(row, name, value)
            db.commit()
            return _job_entity(row)

    def claim_next_job(self, worker_id: str, now: datetime) -> Job | None:
        with self.session_factory() as db:
            candidate_ids = db.execute(
                select(Jobs.id)
                .where(Jobs.status == "pending", Jobs.locked_by.is_(None), Jobs.next_run_at <= now)
                .order_by(Jobs.priority.desc(), Jobs.next_run_at.asc(), Jobs.created_at.asc())
                .limit(10)
            ).scalars().all()
            for job_id in candidate_ids:
                result = db.execute(
                    update(Jobs)
                    .where(Jobs.id == job_id, Jobs.status == "pending", Jobs.locked_by.is_(None))
                    .values(status="running", locked_by=worker_id, locked_at=now, updated_at=now)
                )
                db.commit()
                if result.rowcount == 1:
                    return _job_entity(db.get(Jobs, job_id, populate_existing=True))
        return None

    def release_job(self, job_id: str, worker_id: str, next_run_at: datetime) -> Job | None:
        with self.session_factory() as db:
            result = db.execute(
                update(Jobs)
                .where(Jobs.id == job_id, Jobs.locked_by == worker_id)
                .values(status="pending", locked_by=None, locked_at=None, next_run_at=next_run_at, updated_at=utcnow())
            )
            db.commit()
            if result.rowcount != 1:
                return None
            return _job_entity(db.get(Jobs, job_id, populate_existing=True))

    def finish_job(self, job_id: str, worker_id: str, **changes: Any) -> Job | None:
        changes.setdefault("updated_at", utcnow())
        with self.session_factory() as db:
            result = db.execute(update(Jobs).where(Jobs.id == job_id, Jobs.locked_by == worker_id).values(**changes))
            db.commit()
            if result.rowcount != 1:
                return None
            return _job_entity(db.get(Jobs, job_id, populate_existing=True))

    def list_stale_running_jobs(self, locked_before: datetime) -> list[Job]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Jobs).where(Jobs.status == "running", Jobs.locked_at.is_not(None), Jobs.locked_at < locked_before)
            ).scalars().all()
            return [_job_entity(row) for row in rows]

    def unlock_stale_job(self, job_id: str, expected_worker_id: str | None) -> bool:
        lock_match = Jobs.locked_by.is_(None) if expected_worker_id is None else Jobs.locked_by == expected_worker_id
        with self.session_factory() as db:
            result = db.execute(
                update(Jobs)
                .where(Jobs.id == job_id, Jobs.status == "running", lock_match)
                .values(status="pending", locked_by=None, locked_at=None, updated_at=utcnow())
            )
            db.commit()
            return result.rowcount == 1

    def list_jobs_by_status(self, status: str) -> list[Job]:
        with self.session_factory() as db:
            rows = db.execute(select(Jobs).where(Jobs.status == status).order_by(Jobs.updated_at.desc())).scalars().all()
            return [_job_entity(row) for row in rows]

    def create_job_run(self, run: JobRun) -> JobRun:
        with self.session_factory() as db:
            db.add(JobRuns(**{name: getattr(run, name) for name in _JOB_RUN_FIELDS}))
            db.commit()
        return run

    def update_job_run(self, run_id: str, **changes: Any) -> JobRun:
        with self.session_factory() as db:
            row = db.get(JobRuns, run_id)
            if row is None:
                raise RepositoryError("D-JOB-RUN-NOT-FOUND", f"Job run {run_id} not found")
            for name, value in changes.items():
                setattr(row, name, value)
            db.commit()
            return _job_run_entity(row)

    def list_job_runs(self, job_id: str) -> list[JobRun]:
        with self.session_factory() as db:
            rows = db.execute(select(JobRuns).where(JobRuns.job_id == job_id).order_by(JobRuns.attempt_number)).scalars().all()
            return [_job_run_entity(row) for row in rows]

    # admission control
    def try_acquire_concurrency_slot(self, connector_type: str, account_id: str, default_max: int) -> bool:
        with self.session_factory() as db:
            if db.get(JobLocks, (connector_type, account_id)) is None:
                db.add(JobLocks(connector_type=connector_type, account_id=account_id, active_count=0, max_concurrency=default_max))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
            result = db.execute(
                update(JobLocks)
                .where(
                    JobLocks.connector_type == connector_type,
                    JobLocks.account_id == account_id,
                    JobLocks.active_count < JobLocks.max_concurrency,
                )
                .values(active_count=JobLocks.active_count + 1)
            )
            db.commit()
            return result.rowcount == 1

    def release_concurrency_slot(self, connector_type: str, account_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(JobLocks)
                .where(JobLocks.connector_type == connector_type, JobLocks.account_id == account_id, JobLocks.active_count > 0)
                .values(active_count=JobLocks.active_count - 1)
            )
            db.commit()

    def get_concurrency_slot(self, connector_type: str, account_id: str) -> ConcurrencySlot | None:
        with self.session_factory() as db:
            row = db.get(JobLocks, (connector_type, account_id))
            if row is None:
                return None
            return ConcurrencySlot(row.connector_type, row.account_id, row.active_count, row.max_concurrency)

    def consume_rate_limit_token(
        self,
        account_id: str,
        connector_type: str,
        *,
        max_tokens: float,
        refill_rate: float,
        now: datetime,
    ) -> bool:
        with self.session_factory() as db:
            row = db.execute(
                select(RateLimitBuckets)
                .where(RateLimitBuckets.account_id == account_id, RateLimitBuckets.connector_type == connector_type)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = RateLimitBuckets(
                    account_id=account_id,
                    connector_type=connector_type,
                    tokens=max_tokens,
                    max_tokens=max_tokens,
                    refill_rate=refill_rate,
                    last_refill=now,
                )
                db.add(row)
            elapsed = max(0.0, (now - _as_utc(row.last_refill)).total_seconds())
            tokens = min(row.max_tokens, row.tokens + elapsed * row.refill_rate)
            allowed = tokens >= 1
            row.tokens = tokens - 1 if allowed else tokens
            row.last_refill = now
            db.commit()
            return allowed

    def get_rate_limit_bucket(self, account_id: str, connector_type: str) -> RateLimitBucket | None:
        with self.session_factory() as db:
            row = db.get(RateLimitBuckets, (account_id, connector_type))
            if row is None:
                return None
            return RateLimitBucket(
                row.account_id, row.connector_type, row.tokens, row.max_tokens, row.refill_rate, _as_utc(row.last_refill)
            )

    # corpus
    def list_sources_by_user_and_type(self, user_id: str, source_type: str) -> list[Source]:
        with self.session_factory() as db:
            rows = db.execute(select(Sources).where(Sources.user_id == user_id, Sources.type == source_type)).scalars().all()
            return [_source_entity(row) for row in rows]

    def list_sources_by_workspace(self, workspace_id: str) -> list[Source]:
        with self.session_factory() as db:
            rows = db.execute(select(Sources).where(Sources.workspace_id == workspace_id)).scalars().all()
            return [_source_entity(row) for row in rows]

    def get_source(self, source_id: str) -> Source | None:
        with self.session_factory() as db:
            row = db.get(Sources, source_id)
            return _source_entity(row) if row else None

    def upsert_source(self, source: Source) -> tuple[Source, bool]:
        with self.session_factory() as db:
            row = db.execute(
                select(Sources).where(
                    Sources.workspace_id == source.workspace_id,
                    Sources.external_id == source.external_id,
                    Sources.type == source.type,
                )
            ).scalar_one_or_none()
            if row is not None:
                row.title = source.title
                row.url = source.url
                row.visibility = source.visibility
                if source.content_hash is not None:
                    row.content_hash = source.content_hash
                if source.full_text is not None:
                    row.full_text = source.full_text
                row.metadata_json = dict(source.metadata)
                row.updated_at = utcnow()
                db.commit()
                return _source_entity(row), False
            db.add(
                Sources(
                    id=source.id,
                    workspace_id=source.workspace_id,
                    user_id=source.user_id,
                    created_by_user_id=source.created_by_user_id,
                    type=source.type,
                    visibility=source.visibility,
                    external_id=source.external_id,
                    title=source.title,
                    url=source.url,
                    content_hash=source.content_hash,
                    full_text=source.full_text,
                    metadata_json=dict(source.metadata),
                    created_at=source.created_at,
                    updated_at=source.updated_at,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                LOGGER.info("source_upsert_conflict_retry", extra={"external_id": source.external_id, "source_type": source.type})
                return self.upsert_source(source)
        return source, True

    def delete_source(self, source_id: str) -> list[str]:
        with self.session_factory() as db:
            chunk_ids = db.execute(select(Chunks.id).where(Chunks.source_id == source_id)).scalars().all()
            db.execute(delete(Chunks).where(Chunks.source_id == source_id))
            db.execute(delete(SourceVersions).where(SourceVersions.source_id == source_id))
            db.execute(delete(Sources).where(Sources.id == source_id))
            db.commit()
            return list(chunk_ids)

    def list_source_versions(self, source_id: str) -> list[SourceVersion]:
        with self.session_factory() as db:
            rows = db.execute(
                select(SourceVersions).where(SourceVersions.source_id == source_id).order_by(SourceVersions.version.desc())
            ).scalars().all()
            return [_version_entity(row) for row in rows]

    def get_active_source_version(self, source_id: str) -> SourceVersion | None:
        with self.session_factory() as db:
            row = db.execute(
                select(SourceVersions).where(SourceVersions.source_id == source_id, SourceVersions.is_active.is_(True))
            ).scalar_one_or_none()
            return _version_entity(row) if row else None

    def create_version_with_chunks(self, version: SourceVersion, chunks: Iterable[Chunk]) -> SourceVersion:
        try:
            with session_scope(self.session_factory) as db:
                db.execute(
                    update(SourceVersions)
                    .where(SourceVersions.source_id == version.source_id, SourceVersions.is_active.is_(True))
                    .values(is_active=False)
                )
                db.add(
                    SourceVersions(
                        id=version.id,
                        workspace_id=version.workspace_id,
                        source_id=version.source_id,
                        version=version.version,
                        content_hash=version.content_hash,
                        full_text=version.full_text,
                        is_active=True,
                        char_count=version.char_count,
                        token_estimate=version.token_estimate,
                        created_at=version.created_at,
                    )
                )
                db.flush()
                db.add_all(
                    Chunks(
                        id=chunk.id,
                        workspace_id=chunk.workspace_id,
                        source_id=chunk.source_id,
                        source_version_id=chunk.source_version_id,
                        user_id=chunk.user_id,
                        chunk_index=chunk.chunk_index,
                        text=chunk.text,
                        char_start=chunk.char_start,
                        char_end=chunk.char_end,
                        token_estimate=chunk.token_estimate,
                        metadata_json=dict(chunk.metadata),
                        created_at=chunk.created_at,
                    )
                    for chunk in chunks
                )
        except IntegrityError as exc:
            raise RepositoryError(
                "D-VERSION-CONFLICT",
                f"Version {version.version} already exists for source {version.source_id}",
            ) from exc
        return replace(version, is_active=True)

    def list_active_source_versions(self, workspace_id: str) -> list[SourceVersion]:
        with self.session_factory() as db:
            rows = db.execute(
                select(SourceVersions).where(SourceVersions.workspace_id == workspace_id, SourceVersions.is_active.is_(True))
            ).scalars().all()
            return [_version_entity(row) for row in rows]

    def list_chunks_by_source(self, source_id: str) -> list[Chunk]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Chunks).where(Chunks.source_id == source_id).order_by(Chunks.source_version_id, Chunks.chunk_index)
            ).scalars().all()
            return [_chunk_entity(row) for row in rows]

    def list_chunks_for_versions(self, version_ids: Iterable[str]) -> list[Chunk]:
        wanted = list(version_ids)
        if not wanted:
            return []
        with self.session_factory() as db:
            rows = db.execute(
                select(Chunks).where(Chunks.source_version_id.in_(wanted)).order_by(Chunks.source_id, Chunks.chunk_index)
            ).scalars().all()
            return [_chunk_entity(row) for row in rows]

    def list_active_chunks(self) -> list[Chunk]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Chunks)
                .join(SourceVersions, SourceVersions.id == Chunks.source_version_id)
                .where(SourceVersions.is_active.is_(True))
            ).scalars().all()
            return [_chunk_entity(row) for row in rows]

    # scopes and audit
    def get_sync_scope(self, scope_id: str) -> SyncScope | None:
        with self.session_factory() as db:
            row = db.get(SyncScopes, scope_id)
            return _scope_entity(row) if row else None

    def save_sync_scope(self, scope: SyncScope) -> SyncScope:
        with self.session_factory() as db:
            db.merge(
                SyncScopes(
                    id=scope.id,
                    user_id=scope.user_id,
                    workspace_id=scope.workspace_id,
                    account_id=scope.account_id,
                    connector_type=scope.connector_type,
                    sync_mode=scope.sync_mode,
                    content_strategy=scope.content_strategy,
                    scope_config=dict(scope.scope_config),
                    exclusion_rules=list(scope.exclusion_rules),
                    created_at=scope.created_at,
                )
            )
            db.commit()
        return scope

    def create_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self.session_factory() as db:
            db.add(
                AuditEvents(
                    id=event.id,
                    request_id=event.request_id,
                    kind=event.kind,
                    user_id=event.user_id,
                    success=event.success,
                    error=event.error,
                    payload=dict(event.payload),
                    created_at=event.created_at,
                )
            )
            db.commit()
        return event

    def list_audit_events(self, kind: str | None = None) -> list[AuditEvent]:
        stmt = select(AuditEvents).order_by(AuditEvents.created_at)
        if kind is not None:
            stmt = stmt.where(AuditEvents.kind == kind)
        with self.session_factory() as db:
            return [_audit_entity(row) for row in db.execute(stmt).scalars().all()]

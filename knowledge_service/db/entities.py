"""Plain records exchanged between the repositories and the services.

Repositories hand out immutable copies; state changes go through repository
methods so that the in-memory and SQL stores behave the same.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

JOB_TYPES = ("sync", "ingest", "ingest_call_transcript", "eval", "playbook")
JOB_STATUSES = ("pending", "running", "completed", "failed", "dead_letter")
JOB_RUN_STATUSES = ("running", "completed", "failed")
CONNECTOR_TYPES = ("google", "atlassian", "slack", "upload")
SOURCE_TYPES = ("upload", "confluence", "drive", "jira", "slack", "voice_call")
VISIBILITIES = ("private", "workspace")
SYNC_MODES = ("metadata_first", "full", "smart", "on_demand")
CONTENT_STRATEGIES = ("smart", "full", "on_demand")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Job:
    id: str
    type: str
    user_id: str
    workspace_id: str | None = None
    connector_type: str | None = None
    scope_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    idempotency_key: str | None = None
    priority: int = 0
    status: str = "pending"
    attempts: int = 0
    max_attempts: int = 3
    locked_by: str | None = None
    locked_at: datetime | None = None
    next_run_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_error: str | None = None
    last_error_code: str | None = None


@dataclass(frozen=True)
class JobRun:
    id: str
    job_id: str
    attempt_number: int
    status: str = "running"
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class ConcurrencySlot:
    connector_type: str
    account_id: str
    active_count: int = 0
    max_concurrency: int = 1


@dataclass(frozen=True)
class RateLimitBucket:
    account_id: str
    connector_type: str
    tokens: float
    max_tokens: float
    refill_rate: float
    last_refill: datetime


@dataclass(frozen=True)
class Source:
    id: str
    workspace_id: str
    user_id: str
    created_by_user_id: str
    type: str
    external_id: str
    title: str
    visibility: str = "private"
    url: str | None = None
    content_hash: str | None = None
    full_text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SourceVersion:
    id: str
    workspace_id: str
    source_id: str
    version: int
    content_hash: str
    full_text: str
    is_active: bool = True
    char_count: int = 0
    token_estimate: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Chunk:
    id: str
    workspace_id: str
    source_id: str
    source_version_id: str
    user_id: str
    chunk_index: int
    text: str
    char_start: int
    char_end: int
    token_estimate: int
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SyncScope:
    id: str
    user_id: str
    workspace_id: str
    account_id: str
    connector_type: str
    sync_mode: str = "smart"
    content_strategy: str = "smart"
    scope_config: dict[str, Any] = field(default_factory=dict)
    exclusion_rules: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditEvent:
    id: str
    kind: str
    request_id: str | None = None
    user_id: str | None = None
    success: bool = True
    error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

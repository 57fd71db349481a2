from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "knowledge-service"
    version: str


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    correlation_id: str
    retryable: bool
    timestamp: datetime


class ErrorEnvelope(BaseModel):
    error: ErrorInfo


class EnqueueJobRequest(BaseModel):
    type: Literal["sync", "ingest", "ingest_call_transcript", "eval", "playbook"]
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    workspace_id: str | None = None
    connector_type: Literal["google", "atlassian", "slack", "upload"] | None = None
    scope_id: str | None = None
    idempotency_key: str | None = None
    priority: int = 0
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    run_at: datetime | None = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    user_id: str
    workspace_id: str | None = None
    connector_type: str | None = None
    scope_id: str | None = None
    status: str
    priority: int
    attempts: int
    max_attempts: int
    idempotency_key: str | None = None
    locked_by: str | None = None
    next_run_at: datetime
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    output: dict[str, Any] | None = None
    last_error: str | None = None
    last_error_code: str | None = None


class JobRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    attempt_number: int
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    stats: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


class JobStatusResponse(BaseModel):
    job: JobResponse
    runs: list[JobRunResponse]


class DeadLetterJob(BaseModel):
    job: JobResponse
    last_error: str | None = None
    last_error_code: str | None = None
    attempts: int


class DeadLetterListResponse(BaseModel):
    jobs: list[DeadLetterJob]


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    workspace_id: str
    requester_user_id: str
    connector_types: list[str] | None = None
    scope_id: str | None = None
    top_k: int = Field(default=8, ge=1, le=50)


class RetrievedChunk(BaseModel):
    chunk_id: str
    source_id: str
    source_version_id: str
    title: str | None = None
    url: str | None = None
    source_type: str | None = None
    text: str
    score: float


class RetrieveResponse(BaseModel):
    chunks: list[RetrievedChunk]
    diagnostics: dict[str, Any]

"""Typed input payloads for each job type.

Payloads are stored on the job as plain dicts; handlers validate them here.
Both snake_case and the camelCase keys written by older producers are accepted.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from knowledge_service.core.errors import InvalidJobPayloadError


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SyncJobPayload(_Payload):
    scope_id: str = Field(alias="scopeId")
    user_id: str = Field(alias="userId")
    connector_type: Literal["google", "atlassian", "slack"] = Field(alias="connectorType")
    account_id: str = Field(alias="accountId")
    use_confluence: bool = Field(default=False, alias="useConfluence")


class UploadedFile(_Payload):
    filename: str
    content: str
    mime_type: str = Field(default="text/plain", alias="mimeType")
    size: int = 0

    @field_validator("filename")
    @classmethod
    def filename_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("filename must not be blank")
        return value


class IngestJobPayload(_Payload):
    files: list[UploadedFile] = Field(min_length=1)
    workspace_id: str | None = Field(default=None, alias="workspaceId")


class TranscriptTurn(_Payload):
    role: Literal["user", "assistant"]
    text: str


class IngestCallTranscriptPayload(_Payload):
    call_id: str = Field(alias="callId")
    user_id: str = Field(alias="userId")
    caller_number: str | None = Field(default=None, alias="callerNumber")
    turns: list[TranscriptTurn] = Field(default_factory=list)
    workspace_id: str | None = Field(default=None, alias="workspaceId")


def parse_payload(model: type[_Payload], payload: dict[str, Any] | None) -> Any:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise InvalidJobPayloadError(f"Invalid {model.__name__}: {exc.errors(include_url=False)}") from exc


def account_id_of(payload: dict[str, Any] | None) -> str | None:
    payload = payload or {}
    value = payload.get("accountId") or payload.get("account_id")
    return str(value) if value else None

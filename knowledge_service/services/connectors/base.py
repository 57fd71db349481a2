from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from knowledge_service.core.config import settings
from knowledge_service.core.errors import connector_error_from_exception, connector_error_from_status
from knowledge_service.db.entities import SyncScope

LOGGER = logging.getLogger(__name__)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class SyncableItem:
    external_id: str
    title: str
    url: str | None = None
    content_hash: str | None = None
    mime_type: str | None = None
    modified_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncableContent(SyncableItem):
    content: str = ""


@dataclass
class SyncProgress:
    stage: str
    docs_discovered: int = 0
    docs_fetched: int = 0
    sources_upserted: int = 0
    versions_created: int = 0
    chunks_created: int = 0
    chars_processed: int = 0
    throughput_chars_per_sec: float = 0.0
    eta_seconds: float | None = None


@dataclass
class SyncContext:
    user_id: str
    account_id: str
    scope: SyncScope
    access_token: str
    on_progress: Callable[[SyncProgress], None] | None = None

    @property
    def workspace_id(self) -> str:
        return self.scope.workspace_id

    @property
    def scope_config(self) -> dict[str, Any]:
        return self.scope.scope_config or {}


class SyncEngine(Protocol):
    name: str

    def fetch_metadata(self, ctx: SyncContext) -> list[SyncableItem]:
        ...

    def fetch_content(self, ctx: SyncContext, item: SyncableItem) -> SyncableContent | None:
        ...


class HttpSyncEngine:
    """Shared bearer-token HTTP plumbing for the connector engines.

    Non-2xx responses and transport failures surface as typed
    :class:`~knowledge_service.core.errors.ConnectorError` values.
    """

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.Client | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout_seconds = float(timeout_seconds or settings.CONNECTOR_REQUEST_TIMEOUT_SECONDS)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get(self, ctx: SyncContext, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {ctx.access_token}", "Accept": "application/json"}
        url = self._url(path)
        try:
            if self.http_client is not None:
                response = self.http_client.get(url, params=params, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise connector_error_from_exception(exc, connector=self.name) from exc
        if response.status_code >= 400:
            LOGGER.warning(
                "connector_http_error",
                extra={"connector": self.name, "status_code": response.status_code, "url": url},
            )
            raise connector_error_from_status(response.status_code, f"{self.name} API error: {response.status_code}")
        return response

    def _get_json(self, ctx: SyncContext, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._get(ctx, path, params).json()

from __future__ import annotations

import html
import re
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from knowledge_service.core.config import settings
from knowledge_service.core.errors import ConnectorError
from knowledge_service.services.connectors.base import (
    HttpSyncEngine,
    SyncableContent,
    SyncableItem,
    SyncContext,
    parse_timestamp,
)
from knowledge_service.services.sanitize import sanitize_content

_BLOCK_BREAKS = (
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</div>", re.IGNORECASE), "\n"),
    (re.compile(r"</h[1-6]>", re.IGNORECASE), "\n\n"),
    (re.compile(r"<li[^>]*>", re.IGNORECASE), "- "),
    (re.compile(r"</li>", re.IGNORECASE), "\n"),
)


def storage_to_text(storage_xhtml: str) -> str:
    """Reduce Confluence storage XHTML to plain text with paragraph breaks."""
    text = re.sub(r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>", "", storage_xhtml or "", flags=re.IGNORECASE | re.DOTALL)
    for pattern, replacement in _BLOCK_BREAKS:
        text = pattern.sub(replacement, text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _item_from_page(page: dict[str, Any]) -> SyncableItem:
    version = page.get("version") or {}
    return SyncableItem(
        external_id=str(page["id"]),
        title=page.get("title") or str(page["id"]),
        url=(page.get("_links") or {}).get("webui"),
        modified_at=parse_timestamp(version.get("createdAt") or version.get("when")),
        content_hash=str(version["number"]) if version.get("number") is not None else None,
    )


class ConfluenceSyncEngine(HttpSyncEngine):
    """Page sync over the Confluence v2 API. Scope config keys: ``cloud_id``, ``space_keys``, ``page_ids``."""

    name = "confluence"
    page_size = 50

    def __init__(self, *, http_client: httpx.Client | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url=base_url or settings.CONFLUENCE_API_BASE_URL, http_client=http_client)

    def _api(self, ctx: SyncContext) -> str:
        cloud_id = ctx.scope_config.get("cloud_id")
        if not cloud_id:
            raise ConnectorError("Confluence scope has no cloud_id", error_code="C-CONFLUENCE-NO-CLOUD-ID", retryable=False)
        return f"{self.base_url}/{cloud_id}/wiki/api/v2"

    def fetch_metadata(self, ctx: SyncContext) -> list[SyncableItem]:
        api = self._api(ctx)
        items: list[SyncableItem] = []
        for space_key in ctx.scope_config.get("space_keys") or []:
            items.extend(self._list_space_pages(ctx, api, space_key))
        for page_id in ctx.scope_config.get("page_ids") or []:
            page = self._get_json(ctx, f"{api}/pages/{page_id}")
            if page.get("status") == "current":
                items.append(_item_from_page(page))
        return items

    def _list_space_pages(self, ctx: SyncContext, api: str, space_key: str) -> list[SyncableItem]:
        spaces = self._get_json(ctx, f"{api}/spaces", {"keys": space_key, "limit": 1}).get("results") or []
        if not spaces:
            raise ConnectorError(f"Confluence space {space_key} not found", error_code="C-CONFLUENCE-SPACE-NOT-FOUND", retryable=False)
        space_id = spaces[0]["id"]
        items: list[SyncableItem] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": self.page_size}
            if cursor:
                params["cursor"] = cursor
            data = self._get_json(ctx, f"{api}/spaces/{space_id}/pages", params)
            items.extend(_item_from_page(page) for page in data.get("results") or [] if page.get("status") == "current")
            next_link = (data.get("_links") or {}).get("next")
            cursor = parse_qs(urlparse(next_link).query).get("cursor", [None])[0] if next_link else None
            if not cursor:
                return items

    def fetch_content(self, ctx: SyncContext, item: SyncableItem) -> SyncableContent | None:
        api = self._api(ctx)
        page = self._get_json(ctx, f"{api}/pages/{item.external_id}", {"body-format": "storage"})
        body = page.get("body") or {}
        storage = (body.get("storage") or {}).get("value") or (body.get("view") or {}).get("value") or ""
        text = storage_to_text(storage)
        version = page.get("version") or {}
        header = [f"# {page.get('title') or item.title}", ""]
        if version.get("number") is not None:
            header.append(f"**Version:** {version['number']}")
        sanitized = sanitize_content("\n".join(header) + "\n\n" + text, source_type="confluence")
        return SyncableContent(
            external_id=item.external_id,
            title=item.title,
            url=item.url,
            content_hash=item.content_hash,
            mime_type="text/html",
            modified_at=item.modified_at,
            metadata={
                "source": "confluence",
                "space_id": page.get("spaceId"),
                "version": version.get("number"),
                "injection_markers_removed": sanitized.markers_removed,
            },
            content=sanitized.sanitized,
        )

from __future__ import annotations

import logging
from typing import Any

import httpx

from knowledge_service.core.config import settings
from knowledge_service.services.connectors.base import HttpSyncEngine, SyncableContent, SyncableItem, SyncContext, parse_timestamp

LOGGER = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
EXPORT_MIME_TYPES = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
}
TEXT_MIME_PREFIXES = (
    "text/",
    "application/json",
    "application/xml",
    "application/javascript",
    *EXPORT_MIME_TYPES.keys(),
)
FILE_FIELDS = "id,name,mimeType,modifiedTime,webViewLink,md5Checksum"


def is_text_based(mime_type: str | None) -> bool:
    return bool(mime_type) and any(mime_type.startswith(prefix) for prefix in TEXT_MIME_PREFIXES)


def _item_from_file(payload: dict[str, Any]) -> SyncableItem:
    return SyncableItem(
        external_id=payload["id"],
        title=payload.get("name") or payload["id"],
        url=payload.get("webViewLink"),
        mime_type=payload.get("mimeType"),
        content_hash=payload.get("md5Checksum"),
        modified_at=parse_timestamp(payload.get("modifiedTime")),
    )


class GoogleDriveSyncEngine(HttpSyncEngine):
    """Syncs text-like Drive files from a folder tree and an explicit file list.

    Scope config keys: ``folder_id`` and ``file_ids``.
    """

    name = "drive"

    def __init__(self, *, http_client: httpx.Client | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url=base_url or settings.GOOGLE_DRIVE_API_BASE_URL, http_client=http_client)

    def fetch_metadata(self, ctx: SyncContext) -> list[SyncableItem]:
        config = ctx.scope_config
        items: list[SyncableItem] = []
        if config.get("folder_id"):
            items.extend(self._list_folder(ctx, config["folder_id"]))
        for file_id in config.get("file_ids") or []:
            payload = self._get_json(ctx, f"files/{file_id}", {"fields": FILE_FIELDS})
            if is_text_based(payload.get("mimeType")):
                items.append(_item_from_file(payload))
            else:
                LOGGER.info("drive_file_skipped_non_text", extra={"file_id": file_id, "mime_type": payload.get("mimeType")})
        return items

    def _list_folder(self, ctx: SyncContext, folder_id: str) -> list[SyncableItem]:
        items: list[SyncableItem] = []
        page_token: str | None = None
        while True:
            params = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "pageSize": settings.CONNECTOR_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._get_json(ctx, "files", params)
            for payload in data.get("files") or []:
                mime_type = payload.get("mimeType")
                if mime_type == FOLDER_MIME_TYPE:
                    items.extend(self._list_folder(ctx, payload["id"]))
                elif is_text_based(mime_type):
                    items.append(_item_from_file(payload))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

    def fetch_content(self, ctx: SyncContext, item: SyncableItem) -> SyncableContent | None:
        export_mime = EXPORT_MIME_TYPES.get(item.mime_type or "")
        if export_mime:
            response = self._get(ctx, f"files/{item.external_id}/export", {"mimeType": export_mime})
        else:
            response = self._get(ctx, f"files/{item.external_id}", {"alt": "media"})
        text = response.text
        if not text.strip():
            return None
        return SyncableContent(
            external_id=item.external_id,
            title=item.title,
            url=item.url,
            content_hash=item.content_hash,
            mime_type=item.mime_type,
            modified_at=item.modified_at,
            metadata={**item.metadata, "source": "google_drive"},
            content=text,
        )

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from knowledge_service.core.config import settings
from knowledge_service.core.errors import ConnectorError
from knowledge_service.db.entities import AuditEvent, new_id
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.connectors.base import HttpSyncEngine, SyncableContent, SyncableItem, SyncContext, parse_timestamp
from knowledge_service.services.sanitize import sanitize_content

LOGGER = logging.getLogger(__name__)

RETRYABLE_SLACK_ERRORS = {"ratelimited", "token_expired", "invalid_auth", "internal_error", "fatal_error"}
MAX_USER_LOOKUPS = 100


def format_messages(channel_title: str, messages: list[dict[str, Any]], user_names: dict[str, str]) -> str:
    lines = [f"# Slack Channel: {channel_title}", "", f"Messages: {len(messages)}", ""]
    current_date = ""
    for message in messages:
        stamp = datetime.fromtimestamp(float(message["ts"]), tz=timezone.utc)
        date_str = stamp.strftime("%Y-%m-%d")
        if date_str != current_date:
            current_date = date_str
            lines.extend(["", f"## {date_str}", ""])
        user_id = message.get("user")
        name = user_names.get(user_id) if user_id else None
        name = name or message.get("username") or user_id or "Unknown"
        is_reply = bool(message.get("thread_ts")) and message.get("thread_ts") != message["ts"]
        prefix = "  > " if is_reply else ""
        lines.append(f"{prefix}**{name}** ({stamp.strftime('%H:%M')}): {message.get('text', '')}")
    return "\n".join(lines)


class SlackSyncEngine(HttpSyncEngine):
    """Public-channel history sync.

    Scope config keys: ``channel_ids``, ``start_date`` (ISO date) and
    ``include_threads`` (default True). Private channels are never indexed;
    each skip is written to the audit log when a repository is attached.
    """

    name = "slack"

    def __init__(
        self,
        *,
        http_client: httpx.Client | None = None,
        base_url: str | None = None,
        audit_repository: CorpusRepository | None = None,
    ) -> None:
        super().__init__(base_url=base_url or settings.SLACK_API_BASE_URL, http_client=http_client)
        self.audit_repository = audit_repository

    def _call(self, ctx: SyncContext, method: str, params: dict[str, Any]) -> dict[str, Any]:
        data = self._get_json(ctx, method, params)
        if not data.get("ok"):
            error = str(data.get("error") or "unknown_error")
            raise ConnectorError(
                f"Slack {method} failed: {error}",
                error_code=f"C-SLACK-{error.upper()}",
                retryable=error in RETRYABLE_SLACK_ERRORS,
            )
        return data

    def fetch_metadata(self, ctx: SyncContext) -> list[SyncableItem]:
        items: list[SyncableItem] = []
        for channel_id in ctx.scope_config.get("channel_ids") or []:
            channel = self._call(ctx, "conversations.info", {"channel": channel_id}).get("channel") or {}
            if channel.get("is_private"):
                self._record_private_skip(ctx, channel)
                continue
            items.append(
                SyncableItem(
                    external_id=channel.get("id", channel_id),
                    title=f"#{channel.get('name', channel_id)}",
                    mime_type="text/plain",
                    metadata={"channel_name": channel.get("name"), "is_private": False},
                )
            )
        return items

    def _record_private_skip(self, ctx: SyncContext, channel: dict[str, Any]) -> None:
        LOGGER.warning("slack_private_channel_skipped", extra={"channel_id": channel.get("id"), "scope_id": ctx.scope.id})
        if self.audit_repository is None:
            return
        self.audit_repository.create_audit_event(
            AuditEvent(
                id=new_id(),
                request_id=ctx.scope.id,
                kind="slack_private_channel_skipped",
                user_id=ctx.user_id,
                success=True,
                payload={
                    "channel_id": channel.get("id"),
                    "channel_name": channel.get("name"),
                    "reason": "Private channels cannot be indexed as workspace knowledge",
                },
            )
        )

    def _history(self, ctx: SyncContext, channel_id: str, oldest: str | None, include_threads: bool) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"channel": channel_id, "limit": settings.SLACK_HISTORY_LIMIT}
            if oldest:
                params["oldest"] = oldest
            if cursor:
                params["cursor"] = cursor
            data = self._call(ctx, "conversations.history", params)
            for message in data.get("messages") or []:
                messages.append(message)
                if include_threads and message.get("thread_ts") and message.get("reply_count"):
                    messages.extend(
                        reply for reply in self._replies(ctx, channel_id, message["thread_ts"]) if reply.get("ts") != message["ts"]
                    )
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return sorted(messages, key=lambda message: float(message["ts"]))

    def _replies(self, ctx: SyncContext, channel_id: str, thread_ts: str) -> list[dict[str, Any]]:
        replies: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"channel": channel_id, "ts": thread_ts, "limit": settings.SLACK_HISTORY_LIMIT}
            if cursor:
                params["cursor"] = cursor
            data = self._call(ctx, "conversations.replies", params)
            replies.extend(data.get("messages") or [])
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return replies

    def _user_names(self, ctx: SyncContext, user_ids: list[str]) -> dict[str, str]:
        names: dict[str, str] = {}
        for user_id in user_ids[:MAX_USER_LOOKUPS]:
            try:
                user = self._call(ctx, "users.info", {"user": user_id}).get("user") or {}
            except ConnectorError as exc:
                LOGGER.info("slack_user_lookup_failed", extra={"user_id": user_id, "error_code": exc.error_code})
                continue
            names[user_id] = user.get("real_name") or user.get("name") or user_id
        return names

    def fetch_content(self, ctx: SyncContext, item: SyncableItem) -> SyncableContent | None:
        config = ctx.scope_config
        start = parse_timestamp(config.get("start_date"))
        if start is not None and start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        oldest = str(start.timestamp()) if start else None
        messages = self._history(ctx, item.external_id, oldest, bool(config.get("include_threads", True)))
        if not messages:
            return None

        user_ids = sorted({message["user"] for message in messages if message.get("user")})
        text = format_messages(item.title, messages, self._user_names(ctx, user_ids))
        sanitized = sanitize_content(text, source_type="slack")
        latest_ts = max((message["ts"] for message in messages), key=float)
        channel_name = item.metadata.get("channel_name") or item.title.lstrip("#")
        return SyncableContent(
            external_id=item.external_id,
            title=item.title,
            url=item.url,
            content_hash=latest_ts,
            mime_type=item.mime_type,
            modified_at=item.modified_at,
            metadata={
                "source": "slack",
                "channel_id": item.external_id,
                "channel_name": channel_name,
                "is_private": False,
                "message_count": len(messages),
                "latest_message_ts": latest_ts,
                "injection_markers_removed": sanitized.markers_removed,
            },
            content=sanitized.sanitized,
        )

from __future__ import annotations

from typing import Any

import httpx

from knowledge_service.core.config import settings
from knowledge_service.core.errors import ConnectorError
from knowledge_service.services.connectors.base import HttpSyncEngine, SyncableContent, SyncableItem, SyncContext, parse_timestamp
from knowledge_service.services.sanitize import sanitize_content

ISSUE_FIELDS = "summary,description,issuetype,status,priority,assignee,reporter,labels,comment"


def adf_to_text(value: Any) -> str:
    """Flatten an Atlassian Document Format node (or plain string) to text."""
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return ""
    return _nodes_to_text(value.get("content") or [])


def _nodes_to_text(nodes: list[Any]) -> str:
    parts: list[str] = []
    for node in nodes:
        if not isinstance(node, dict):
            continue
        if node.get("type") == "text" and node.get("text"):
            parts.append(node["text"])
        elif isinstance(node.get("content"), list):
            parts.append(_nodes_to_text(node["content"]))
    return " ".join(parts)


def format_issue(issue: dict[str, Any]) -> str:
    fields = issue.get("fields") or {}
    lines = [f"# {issue.get('key')}: {fields.get('summary', '')}", ""]
    lines.append(f"**Type:** {(fields.get('issuetype') or {}).get('name', 'Unknown')}")
    lines.append(f"**Status:** {(fields.get('status') or {}).get('name', 'Unknown')}")
    if fields.get("priority"):
        lines.append(f"**Priority:** {fields['priority'].get('name')}")
    if fields.get("assignee"):
        lines.append(f"**Assignee:** {fields['assignee'].get('displayName')}")
    if fields.get("reporter"):
        lines.append(f"**Reporter:** {fields['reporter'].get('displayName')}")
    if fields.get("labels"):
        lines.append(f"**Labels:** {', '.join(fields['labels'])}")
    lines.append("")
    if fields.get("description"):
        lines.extend(["## Description", "", adf_to_text(fields["description"]), ""])
    comments = (fields.get("comment") or {}).get("comments") or []
    if comments:
        lines.extend(["## Comments", ""])
        for comment in comments:
            author = (comment.get("author") or {}).get("displayName", "Unknown")
            lines.append(f"### {author} ({comment.get('created', '')})")
            lines.append(adf_to_text(comment.get("body")))
            lines.append("")
    return "\n".join(lines)


class JiraSyncEngine(HttpSyncEngine):
    """JQL-driven issue sync. Scope config keys: ``cloud_id``, ``project_keys``, ``jql``."""

    name = "jira"
    page_size = 50

    def __init__(self, *, http_client: httpx.Client | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url=base_url or settings.JIRA_API_BASE_URL, http_client=http_client)

    def _api(self, ctx: SyncContext) -> str:
        cloud_id = ctx.scope_config.get("cloud_id")
        if not cloud_id:
            raise ConnectorError("Jira scope has no cloud_id", error_code="C-JIRA-NO-CLOUD-ID", retryable=False)
        return f"{self.base_url}/{cloud_id}/rest/api/3"

    @staticmethod
    def build_jql(config: dict[str, Any]) -> str:
        jql = config.get("jql") or ""
        project_keys = config.get("project_keys") or []
        if project_keys:
            project_filter = f"project in ({','.join(project_keys)})"
            jql = f"({jql}) AND {project_filter}" if jql else project_filter
        return jql or "order by updated DESC"

    def fetch_metadata(self, ctx: SyncContext) -> list[SyncableItem]:
        api = self._api(ctx)
        jql = self.build_jql(ctx.scope_config)
        items: list[SyncableItem] = []
        start_at = 0
        while True:
            data = self._get_json(
                ctx,
                f"{api}/search",
                {"jql": jql, "startAt": start_at, "maxResults": self.page_size, "fields": "summary,updated"},
            )
            issues = data.get("issues") or []
            for issue in issues:
                fields = issue.get("fields") or {}
                items.append(
                    SyncableItem(
                        external_id=str(issue["id"]),
                        title=f"{issue['key']}: {fields.get('summary', '')}",
                        url=f"https://atlassian.net/browse/{issue['key']}",
                        modified_at=parse_timestamp(fields.get("updated")),
                        content_hash=fields.get("updated"),
                    )
                )
            start_at += len(issues)
            if not issues or start_at >= int(data.get("total") or 0):
                return items

    def fetch_content(self, ctx: SyncContext, item: SyncableItem) -> SyncableContent | None:
        api = self._api(ctx)
        issue = self._get_json(ctx, f"{api}/issue/{item.external_id}", {"fields": ISSUE_FIELDS})
        fields = issue.get("fields") or {}
        sanitized = sanitize_content(format_issue(issue), source_type="jira")
        return SyncableContent(
            external_id=item.external_id,
            title=item.title,
            url=item.url,
            content_hash=item.content_hash,
            mime_type=item.mime_type,
            modified_at=item.modified_at,
            metadata={
                "source": "jira",
                "issue_key": issue.get("key"),
                "issue_type": (fields.get("issuetype") or {}).get("name"),
                "status": (fields.get("status") or {}).get("name"),
                "priority": (fields.get("priority") or {}).get("name"),
                "assignee": (fields.get("assignee") or {}).get("displayName"),
                "labels": fields.get("labels") or [],
                "injection_markers_removed": sanitized.markers_removed,
            },
            content=sanitized.sanitized,
        )

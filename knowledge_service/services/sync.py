"""Connector output to versioned, chunked, embedded corpus entries.

A sync pass never removes previously ingested knowledge unless the pass itself
produced new chunks without a single item error.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from knowledge_service.core.errors import PipelineInvariantError
from knowledge_service.core.logging import log_event
from knowledge_service.core.math_utils import estimate_tokens
from knowledge_service.db.entities import AuditEvent, Chunk, Source, SourceVersion, SyncScope, new_id, utcnow
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.chunking import TextChunk, chunk_text
from knowledge_service.services.connectors.base import SyncableContent, SyncableItem, SyncContext, SyncEngine, SyncProgress
from knowledge_service.services.embedding_index import EmbeddingIndex

LOGGER = logging.getLogger(__name__)

ENGINE_SOURCE_TYPES = {"google": "drive"}
SOURCE_LOCK_STRIPES = 64


def source_type_for_engine(engine_name: str) -> str:
    return ENGINE_SOURCE_TYPES.get(engine_name, engine_name)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_excluded(item: SyncableItem, exclusion_rules: list[str]) -> bool:
    return any(
        fnmatch.fnmatchcase(item.title, rule) or fnmatch.fnmatchcase(item.external_id, rule)
        for rule in exclusion_rules
    )


def should_fetch_content(sync_mode: str, existing: Source | None, item: SyncableItem) -> bool:
    if sync_mode == "on_demand":
        return False
    if sync_mode == "full":
        return True
    if existing is None:
        return True
    if sync_mode == "metadata_first":
        return False
    # smart: refetch unless the connector reports the same revision as last time
    return item.content_hash is None or existing.metadata.get("remote_hash") != item.content_hash


@dataclass
class SyncResult:
    success: bool = True
    sources_created: int = 0
    sources_updated: int = 0
    sources_deleted: int = 0
    chunks_created: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "sources_created": self.sources_created,
            "sources_updated": self.sources_updated,
            "sources_deleted": self.sources_deleted,
            "chunks_created": self.chunks_created,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True)
class IngestOutcome:
    status: str  # created | updated | unchanged | empty
    source: Source
    version: SourceVersion | None
    chunks: list[Chunk]
    source_created: bool


class SyncOrchestrator:
    def __init__(
        self,
        repo: CorpusRepository,
        index: EmbeddingIndex,
        *,
        chunker: Callable[[str], list[TextChunk]] = chunk_text,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.index = index
        self.chunker = chunker
        self.clock = clock
        self._source_locks = [threading.Lock() for _ in range(SOURCE_LOCK_STRIPES)]

    def _source_lock(self, source_id: str) -> threading.Lock:
        return self._source_locks[hash(source_id) % SOURCE_LOCK_STRIPES]

    def ingest_document(
        self,
        *,
        workspace_id: str,
        user_id: str,
        source_type: str,
        content: SyncableContent,
        visibility: str = "private",
        source_metadata: dict[str, Any] | None = None,
        chunk_metadata: dict[str, Any] | None = None,
        confirmed_metadata: dict[str, Any] | None = None,
    ) -> IngestOutcome:
        """Upsert the source and, when the text changed, write a new active version with its chunks.

        The source's text mirror and ``confirmed_metadata`` are written only once
        the text is safely versioned, so a failed write is retried by the next
        smart sync. A new source that never gets a version is removed again.
        """
        digest = content_hash(content.content)
        now = self.clock()
        source, created = self.repo.upsert_source(
            Source(
                id=new_id(),
                workspace_id=workspace_id,
                user_id=user_id,
                created_by_user_id=user_id,
                type=source_type,
                external_id=content.external_id,
                title=content.title,
                visibility=visibility,
                url=content.url,
                metadata={**(source_metadata or {}), **content.metadata},
                created_at=now,
                updated_at=now,
            )
        )

        with self._source_lock(source.id):
            active = self.repo.get_active_source_version(source.id)
            if active is not None and active.content_hash == digest:
                LOGGER.info("sync_content_unchanged", extra={"source_id": source.id, "version": active.version})
                return IngestOutcome("unchanged", self._confirm(source, digest, content.content, confirmed_metadata), active, [], created)

            pieces = self.chunker(content.content)
            if not pieces:
                LOGGER.warning("sync_content_produced_no_chunks", extra={"source_id": source.id, "chars": len(content.content)})
                self._discard_unversioned(source, created)
                return IngestOutcome("empty", source, active, [], created)

            versions = self.repo.list_source_versions(source.id)
            version = SourceVersion(
                id=new_id(),
                workspace_id=workspace_id,
                source_id=source.id,
                version=(versions[0].version if versions else 0) + 1,
                content_hash=digest,
                full_text=content.content,
                is_active=True,
                char_count=len(content.content),
                token_estimate=estimate_tokens(content.content),
                created_at=now,
            )
            chunks = [
                Chunk(
                    id=new_id(),
                    workspace_id=workspace_id,
                    source_id=source.id,
                    source_version_id=version.id,
                    user_id=user_id,
                    chunk_index=piece.chunk_index,
                    text=piece.text,
                    char_start=piece.char_start,
                    char_end=piece.char_end,
                    token_estimate=piece.token_estimate,
                    metadata=dict(chunk_metadata or {}),
                    created_at=now,
                )
                for piece in pieces
            ]
            # Vectors first: a version only becomes visible once every chunk is embedded.
            try:
                self.index.index_chunks(chunks)
                version = self.repo.create_version_with_chunks(version, chunks)
            except Exception:
                self.index.remove(chunk.id for chunk in chunks)
                self._discard_unversioned(source, created)
                raise
            if active is not None:
                superseded = self.repo.list_chunks_for_versions([active.id])
                self.index.remove(chunk.id for chunk in superseded)

        LOGGER.info(
            "sync_content_persisted",
            extra={"source_id": source.id, "version": version.version, "chunks": len(chunks), "workspace_id": workspace_id},
        )
        source = self._confirm(source, digest, content.content, confirmed_metadata)
        return IngestOutcome("created" if created else "updated", source, version, chunks, created)

    def _confirm(self, source: Source, digest: str, text: str, confirmed_metadata: dict[str, Any] | None) -> Source:
        if source.content_hash == digest and not confirmed_metadata:
            return source
        confirmed, _ = self.repo.upsert_source(
            replace(source, content_hash=digest, full_text=text, metadata={**source.metadata, **(confirmed_metadata or {})})
        )
        return confirmed

    def _discard_unversioned(self, source: Source, created: bool) -> None:
        if created and not self.repo.list_source_versions(source.id):
            self.repo.delete_source(source.id)
            LOGGER.info("sync_source_discarded", extra={"source_id": source.id, "external_id": source.external_id})

    def sync_content(
        self,
        ctx: SyncContext,
        source_type: str,
        content: SyncableContent,
        result: SyncResult | None = None,
        progress: SyncProgress | None = None,
        *,
        remote_hash: str | None = None,
    ) -> IngestOutcome:
        scope = ctx.scope
        is_slack_public = source_type == "slack" and content.metadata.get("is_private") is False
        chunk_metadata: dict[str, Any] = {
            "connector_type": scope.connector_type,
            "scope_id": scope.id,
            "external_id": content.external_id,
        }
        if source_type == "slack":
            chunk_metadata.update(
                channel_id=content.metadata.get("channel_id"),
                channel_name=content.metadata.get("channel_name"),
                is_private=False,
            )
        if progress is not None:
            progress.stage = "persisting"
        outcome = self.ingest_document(
            workspace_id=ctx.workspace_id,
            user_id=ctx.user_id,
            source_type=source_type,
            content=content,
            visibility="workspace" if is_slack_public else "private",
            source_metadata={
                "mime_type": content.mime_type,
                "modified_at": content.modified_at.isoformat() if content.modified_at else None,
                "scope_id": scope.id,
            },
            chunk_metadata=chunk_metadata,
            confirmed_metadata={"remote_hash": remote_hash if remote_hash is not None else content.content_hash},
        )
        if result is not None:
            if outcome.status == "created":
                result.sources_created += 1
            elif outcome.status == "updated":
                result.sources_updated += 1
            result.chunks_created += len(outcome.chunks)
        if progress is not None:
            progress.sources_upserted += 1
            progress.chars_processed += len(content.content)
            progress.chunks_created += len(outcome.chunks)
            if outcome.status in {"created", "updated"}:
                progress.versions_created += 1
                progress.stage = "embedding"
        return outcome

    def run_sync(self, engine: SyncEngine, ctx: SyncContext) -> SyncResult:
        result = SyncResult(started_at=self.clock())
        scope = ctx.scope
        sync_mode = scope.sync_mode or "metadata_first"
        source_type = source_type_for_engine(engine.name)
        request_id = new_id()
        progress = SyncProgress(stage="fetching")
        started = time.monotonic()
        unchanged = 0
        empty = 0

        LOGGER.info(
            "sync_started",
            extra={"engine": engine.name, "scope_id": scope.id, "user_id": ctx.user_id, "sync_mode": sync_mode},
        )
        try:
            items = [item for item in engine.fetch_metadata(ctx) if not is_excluded(item, scope.exclusion_rules)]
            progress.docs_discovered = len(items)
            self._report(ctx, progress)

            existing_by_external_id = {
                source.external_id: source
                for source in self.repo.list_sources_by_user_and_type(ctx.user_id, source_type)
                if source.workspace_id == ctx.workspace_id and source.metadata.get("scope_id") in (None, scope.id)
            }
            seen: set[str] = set()

            for item in items:
                seen.add(item.external_id)
                existing = existing_by_external_id.get(item.external_id)
                if not should_fetch_content(sync_mode, existing, item):
                    LOGGER.info("sync_item_skipped", extra={"external_id": item.external_id, "sync_mode": sync_mode})
                    continue
                try:
                    progress.stage = "fetching"
                    content = engine.fetch_content(ctx, item)
                    if content is None:
                        continue
                    progress.docs_fetched += 1
                    outcome = self.sync_content(ctx, source_type, content, result, progress, remote_hash=item.content_hash)
                    if outcome.status == "unchanged":
                        unchanged += 1
                    elif outcome.status == "empty":
                        empty += 1
                except Exception as exc:  # noqa: BLE001
                    message = f"Failed to sync item {item.external_id}: {exc}"
                    LOGGER.error("sync_item_failed", extra={"external_id": item.external_id, "error": str(exc)})
                    result.errors.append(message)
                self._update_rates(progress, started, len(items))
                self._report(ctx, progress)

            ingest_success = progress.sources_upserted > 0 and result.chunks_created > 0 and not result.errors
            if ingest_success:
                for external_id, source in existing_by_external_id.items():
                    if external_id in seen:
                        continue
                    try:
                        removed_chunks = self.repo.delete_source(source.id)
                        self.index.remove(removed_chunks)
                        result.sources_deleted += 1
                    except Exception as exc:  # noqa: BLE001
                        result.errors.append(f"Failed to delete source {source.id}: {exc}")
            else:
                LOGGER.warning(
                    "sync_deletion_skipped",
                    extra={
                        "sources_upserted": progress.sources_upserted,
                        "chunks_created": result.chunks_created,
                        "error_count": len(result.errors),
                        "preserved_sources": len(existing_by_external_id),
                    },
                )

            result.success = not result.errors
            summary = {
                "engine": engine.name,
                "scope_id": scope.id,
                "account_id": ctx.account_id,
                "workspace_id": ctx.workspace_id,
                "sync_mode": sync_mode,
                "discovered": progress.docs_discovered,
                "fetched": progress.docs_fetched,
                "processed": progress.sources_upserted,
                "unchanged": unchanged,
                "sources_created": result.sources_created,
                "sources_updated": result.sources_updated,
                "sources_deleted": result.sources_deleted,
                "chunks_created": result.chunks_created,
                "error_count": len(result.errors),
                "ingest_success": ingest_success,
            }
            log_event("sync_summary", payload=summary)
            self._audit(request_id, ctx, success=ingest_success, payload=summary)
        except Exception as exc:
            result.success = False
            progress.stage = "error"
            self._report(ctx, progress)
            message = f"Sync failed: {exc}"
            LOGGER.error("sync_failed", extra={"engine": engine.name, "scope_id": scope.id, "error": str(exc)})
            self._audit(request_id, ctx, success=False, payload={"engine": engine.name, "scope_id": scope.id}, error=message)
            raise

        if progress.docs_discovered > 0 and progress.docs_fetched > 0 and result.chunks_created == 0 and empty > 0:
            progress.stage = "error"
            self._report(ctx, progress)
            raise PipelineInvariantError(
                f"Found {progress.docs_discovered} items, fetched {progress.docs_fetched}, but created 0 chunks"
            )

        progress.stage = "done"
        self._report(ctx, progress)
        result.completed_at = self.clock()
        return result

    def sync_on_demand(self, engine: SyncEngine, ctx: SyncContext, external_id: str) -> SyncableContent | None:
        item = next((item for item in engine.fetch_metadata(ctx) if item.external_id == external_id), None)
        if item is None:
            LOGGER.warning("sync_on_demand_item_not_found", extra={"external_id": external_id, "scope_id": ctx.scope.id})
            return None
        content = engine.fetch_content(ctx, item)
        if content is None:
            return None
        self.sync_content(ctx, source_type_for_engine(engine.name), content, remote_hash=item.content_hash)
        return content

    @staticmethod
    def _update_rates(progress: SyncProgress, started: float, total_items: int) -> None:
        if progress.docs_fetched == 0:
            return
        elapsed = max(time.monotonic() - started, 1e-6)
        progress.throughput_chars_per_sec = progress.chars_processed / elapsed
        progress.eta_seconds = max(0, total_items - progress.docs_fetched) * (elapsed / progress.docs_fetched)

    @staticmethod
    def _report(ctx: SyncContext, progress: SyncProgress) -> None:
        if ctx.on_progress is not None:
            ctx.on_progress(replace(progress))

    def _audit(self, request_id: str, ctx: SyncContext, *, success: bool, payload: dict[str, Any], error: str | None = None) -> None:
        self.repo.create_audit_event(
            AuditEvent(
                id=new_id(),
                request_id=request_id,
                kind="sync",
                user_id=ctx.user_id,
                success=success,
                error=error,
                payload=payload,
            )
        )


def build_sync_context(
    scope: SyncScope,
    *,
    access_token: str,
    on_progress: Callable[[SyncProgress], None] | None = None,
) -> SyncContext:
    return SyncContext(
        user_id=scope.user_id,
        account_id=scope.account_id,
        scope=scope,
        access_token=access_token,
        on_progress=on_progress,
    )

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

import httpx

from knowledge_service.core.errors import JobError
from knowledge_service.db.entities import Job, utcnow
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.connectors import resolve_engine
from knowledge_service.services.connectors.base import SyncEngine, SyncProgress
from knowledge_service.services.sync import SyncOrchestrator, build_sync_context
from knowledge_service.workers.handlers import CredentialProvider
from knowledge_service.workers.payloads import SyncJobPayload, parse_payload

LOGGER = logging.getLogger(__name__)

EngineResolver = Callable[..., SyncEngine]


class SyncJobHandler:
    """Runs one sync pass for the scope named in the job payload."""

    def __init__(
        self,
        repo: CorpusRepository,
        orchestrator: SyncOrchestrator,
        credentials: CredentialProvider,
        *,
        engine_resolver: EngineResolver = resolve_engine,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.repo = repo
        self.orchestrator = orchestrator
        self.credentials = credentials
        self.engine_resolver = engine_resolver
        self.http_client = http_client

    def __call__(self, job: Job, report_progress: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        payload = parse_payload(SyncJobPayload, job.input)
        scope = self.repo.get_sync_scope(payload.scope_id)
        if scope is None:
            raise JobError(f"Scope not found: {payload.scope_id}", error_code="404", retryable=False)

        access_token = self.credentials.get_access_token(payload.account_id, payload.user_id)
        if not access_token:
            raise JobError(f"No credential for account {payload.account_id}", error_code="404", retryable=False)

        engine = self.engine_resolver(
            payload.connector_type,
            payload.use_confluence,
            http_client=self.http_client,
            audit_repository=self.repo,
        )
        LOGGER.info(
            "sync_job_started",
            extra={
                "job_id": job.id,
                "connector_type": payload.connector_type,
                "engine": engine.name,
                "scope_id": scope.id,
                "sync_mode": scope.sync_mode,
            },
        )

        latest: dict[str, Any] = {}

        def on_progress(progress: SyncProgress) -> None:
            latest.update(asdict(progress))
            report_progress({**latest, "last_updated_at": utcnow().isoformat()})

        ctx = build_sync_context(scope, access_token=access_token, on_progress=on_progress)
        result = self.orchestrator.run_sync(engine, ctx)
        if not result.success:
            raise JobError(f"Sync finished with {len(result.errors)} item errors: {'; '.join(result.errors[:5])}", error_code="S-SYNC-ITEM-ERRORS")

        processed = result.sources_created + result.sources_updated
        discovered = int(latest.get("docs_discovered", processed))
        return {
            **result.as_dict(),
            "discovered": discovered,
            "processed": processed,
            "skipped": max(0, discovered - processed),
            "failed": len(result.errors),
        }

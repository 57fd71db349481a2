from __future__ import annotations

from typing import Protocol

import httpx

from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.sync import SyncOrchestrator
from knowledge_service.workers.runner import JobHandlerRegistry


class CredentialProvider(Protocol):
    """Resolves a connector account to a usable OAuth access token.

    Returns None when the account is unknown or has no token.
    """

    def get_access_token(self, account_id: str, user_id: str) -> str | None:
        ...


class StaticCredentialProvider:
    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self.tokens = dict(tokens or {})

    def get_access_token(self, account_id: str, user_id: str) -> str | None:
        return self.tokens.get(account_id)


def build_handler_registry(
    repo: CorpusRepository,
    orchestrator: SyncOrchestrator,
    credentials: CredentialProvider,
    *,
    http_client: httpx.Client | None = None,
) -> JobHandlerRegistry:
    from knowledge_service.workers.handlers.call_transcript_handler import CallTranscriptHandler
    from knowledge_service.workers.handlers.ingest_handler import IngestHandler
    from knowledge_service.workers.handlers.sync_handler import SyncJobHandler

    handlers = JobHandlerRegistry()
    handlers.register("sync", SyncJobHandler(repo, orchestrator, credentials, http_client=http_client))
    handlers.register("ingest", IngestHandler(repo, orchestrator))
    handlers.register("ingest_call_transcript", CallTranscriptHandler(orchestrator))
    return handlers

from __future__ import annotations

from collections.abc import Callable

import httpx

from knowledge_service.core.errors import KnowledgeServiceError
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.connectors.base import SyncEngine

EngineFactory = Callable[[httpx.Client | None, CorpusRepository | None], SyncEngine]


class ConnectorRegistryError(KnowledgeServiceError):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message, error_code=error_code, retryable=False)


def engine_name_for(connector_type: str, *, use_confluence: bool = False) -> str:
    """Map an account connector type to the engine that syncs it."""
    if connector_type == "google":
        return "drive"
    if connector_type == "atlassian":
        return "confluence" if use_confluence else "jira"
    if connector_type == "slack":
        return "slack"
    raise ConnectorRegistryError("C-CONNECTOR-UNKNOWN-TYPE", f"Unknown connector_type: {connector_type}")


class SyncEngineRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, EngineFactory] = {}

    def register(self, engine_name: str, factory: EngineFactory) -> None:
        self._factories[engine_name] = factory

    def create(
        self,
        engine_name: str,
        *,
        http_client: httpx.Client | None = None,
        audit_repository: CorpusRepository | None = None,
    ) -> SyncEngine:
        factory = self._factories.get(engine_name)
        if factory is None:
            raise ConnectorRegistryError("C-CONNECTOR-UNKNOWN-ENGINE", f"No sync engine registered as {engine_name}")
        return factory(http_client, audit_repository)

    def resolve(
        self,
        connector_type: str,
        *,
        use_confluence: bool = False,
        http_client: httpx.Client | None = None,
        audit_repository: CorpusRepository | None = None,
    ) -> SyncEngine:
        return self.create(
            engine_name_for(connector_type, use_confluence=use_confluence),
            http_client=http_client,
            audit_repository=audit_repository,
        )

    def list_registered(self) -> list[str]:
        return sorted(self._factories.keys())


registry = SyncEngineRegistry()


def resolve_engine(
    connector_type: str,
    use_confluence: bool = False,
    *,
    http_client: httpx.Client | None = None,
    audit_repository: CorpusRepository | None = None,
) -> SyncEngine:
    if not registry.list_registered():
        from knowledge_service.services.connectors import register_default_engines

        register_default_engines()
    return registry.resolve(
        connector_type,
        use_confluence=use_confluence,
        http_client=http_client,
        audit_repository=audit_repository,
    )

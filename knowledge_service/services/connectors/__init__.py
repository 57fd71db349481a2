from knowledge_service.services.connectors.registry import (
    ConnectorRegistryError,
    SyncEngineRegistry,
    engine_name_for,
    registry,
    resolve_engine,
)


def register_default_engines() -> SyncEngineRegistry:
    from knowledge_service.services.connectors.confluence import ConfluenceSyncEngine
    from knowledge_service.services.connectors.google_drive import GoogleDriveSyncEngine
    from knowledge_service.services.connectors.jira import JiraSyncEngine
    from knowledge_service.services.connectors.slack import SlackSyncEngine

    registry.register("drive", lambda client, _repo: GoogleDriveSyncEngine(http_client=client))
    registry.register("jira", lambda client, _repo: JiraSyncEngine(http_client=client))
    registry.register("confluence", lambda client, _repo: ConfluenceSyncEngine(http_client=client))
    registry.register("slack", lambda client, repo: SlackSyncEngine(http_client=client, audit_repository=repo))
    return registry

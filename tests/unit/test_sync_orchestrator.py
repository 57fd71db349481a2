from dataclasses import replace

import pytest

from knowledge_service.core.errors import PipelineInvariantError
from knowledge_service.db.entities import Source
from knowledge_service.services.connectors.base import SyncableItem
from knowledge_service.services.sync import SOURCE_LOCK_STRIPES, build_sync_context, is_excluded, should_fetch_content
from tests.fakes import FailingEmbeddingProvider, FakeSyncEngine, build_orchestrator, long_text, make_scope


def _ctx(scope=None, progress=None):
    return build_sync_context(scope or make_scope(), access_token="tok", on_progress=progress)


def _active_versions(repo, source):
    return [version for version in repo.list_source_versions(source.id) if version.is_active]


def test_first_sync_creates_sources_versions_and_vectors():
    repo, index, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", long_text(), "r1"), "b": ("Doc B", "Short doc b.", "r1")})

    result = orchestrator.run_sync(engine, _ctx())

    assert result.success is True
    assert result.sources_created == 2
    assert result.chunks_created >= 3
    sources = repo.list_sources_by_workspace("ws-1")
    assert {source.type for source in sources} == {"drive"}
    assert all(source.metadata["remote_hash"] == "r1" for source in sources)
    assert all(source.metadata["scope_id"] == "scope-1" for source in sources)
    assert all(index.has_vector(chunk.id) for chunk in repo.list_active_chunks())
    chunk = repo.list_active_chunks()[0]
    assert chunk.metadata["connector_type"] == "google"
    assert chunk.metadata["scope_id"] == "scope-1"


def test_smart_sync_skips_items_with_unchanged_revision():
    repo, _, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha text.", "r1"), "b": ("Doc B", "Beta text.", "r1")})
    orchestrator.run_sync(engine, _ctx())
    engine.fetched.clear()
    engine.documents["b"] = ("Doc B", "Beta text, revised.", "r2")

    result = orchestrator.run_sync(engine, _ctx())

    assert engine.fetched == ["b"]
    assert result.sources_updated == 1
    source_b = next(s for s in repo.list_sources_by_workspace("ws-1") if s.external_id == "b")
    assert [v.version for v in repo.list_source_versions(source_b.id)] == [2, 1]
    assert len(_active_versions(repo, source_b)) == 1


def test_full_sync_refetches_but_identical_text_creates_no_version():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="full")
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha text.", "r1")})
    orchestrator.run_sync(engine, _ctx(scope))

    result = orchestrator.run_sync(engine, _ctx(scope))

    assert engine.fetched == ["a", "a"]
    assert result.chunks_created == 0
    assert result.sources_updated == 0
    source = repo.list_sources_by_workspace("ws-1")[0]
    assert len(repo.list_source_versions(source.id)) == 1


def test_repeated_syncs_keep_single_active_version():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="full")
    engine = FakeSyncEngine()
    for revision in range(4):
        engine.documents["a"] = ("Doc A", f"Revision {revision} of the handbook.", f"r{revision}")
        orchestrator.run_sync(engine, _ctx(scope))

    source = repo.list_sources_by_workspace("ws-1")[0]
    versions = repo.list_source_versions(source.id)
    assert [v.version for v in versions] == [4, 3, 2, 1]
    assert [v.is_active for v in versions] == [True, False, False, False]
    active_chunks = repo.list_active_chunks()
    assert {chunk.source_version_id for chunk in active_chunks} == {versions[0].id}


def test_successful_pass_deletes_sources_missing_upstream():
    repo, index, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1"), "b": ("Doc B", "Beta.", "r1")})
    orchestrator.run_sync(engine, _ctx())
    b_chunks = [c.id for c in repo.list_active_chunks() if c.metadata["external_id"] == "b"]
    del engine.documents["b"]
    engine.documents["a"] = ("Doc A", "Alpha, updated.", "r2")

    result = orchestrator.run_sync(engine, _ctx())

    assert result.sources_deleted == 1
    assert [s.external_id for s in repo.list_sources_by_workspace("ws-1")] == ["a"]
    assert not any(index.has_vector(chunk_id) for chunk_id in b_chunks)


def test_deletion_is_skipped_when_pass_created_no_chunks():
    repo, _, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1"), "b": ("Doc B", "Beta.", "r1")})
    orchestrator.run_sync(engine, _ctx())
    del engine.documents["b"]

    result = orchestrator.run_sync(engine, _ctx())

    assert result.sources_deleted == 0
    assert len(repo.list_sources_by_workspace("ws-1")) == 2


def test_item_errors_block_deletion_and_mark_failure():
    repo, _, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1"), "b": ("Doc B", "Beta.", "r1")})
    orchestrator.run_sync(engine, _ctx())
    del engine.documents["b"]
    engine.documents["a"] = ("Doc A", "Alpha v2.", "r2")
    engine.documents["c"] = ("Doc C", "Gamma.", "r1")
    engine.failing.add("c")

    result = orchestrator.run_sync(engine, _ctx())

    assert result.success is False
    assert result.sources_deleted == 0
    assert len(result.errors) == 1
    assert "Failed to sync item c" in result.errors[0]
    assert {s.external_id for s in repo.list_sources_by_workspace("ws-1")} == {"a", "b"}


def test_zero_chunk_pass_raises_and_preserves_corpus():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="full")
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1")})
    orchestrator.run_sync(engine, _ctx(scope))
    engine.documents["a"] = ("Doc A", "   \n  ", "r2")
    stages = []

    with pytest.raises(PipelineInvariantError) as exc_info:
        orchestrator.run_sync(engine, _ctx(scope, progress=lambda p: stages.append(p.stage)))

    assert exc_info.value.error_code == "S-SYNC-ZERO-CHUNKS"
    assert exc_info.value.retryable is False
    assert stages[-1] == "error"
    source = repo.list_sources_by_workspace("ws-1")[0]
    assert repo.get_active_source_version(source.id).full_text == "Alpha."
    assert source.full_text == "Alpha."
    assert source.content_hash == repo.get_active_source_version(source.id).content_hash
    assert source.metadata.get("remote_hash") != "r2"


def test_embedding_failure_persists_nothing():
    repo, _, orchestrator = build_orchestrator(provider=FailingEmbeddingProvider())
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1")})

    result = orchestrator.run_sync(engine, _ctx())

    assert result.success is False
    assert result.sources_created == 0
    assert repo.list_active_chunks() == []
    assert repo.list_sources_by_workspace("ws-1") == []


def test_failed_update_keeps_existing_source_mirror():
    repo, index, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="full")
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1")})
    orchestrator.run_sync(engine, _ctx(scope))
    engine.documents["a"] = ("Doc A", "Alpha, rewritten.", "r2")
    index.provider = FailingEmbeddingProvider()

    result = orchestrator.run_sync(engine, _ctx(scope))

    assert result.success is False
    source = repo.list_sources_by_workspace("ws-1")[0]
    active = repo.get_active_source_version(source.id)
    assert active.full_text == "Alpha."
    assert source.full_text == "Alpha."
    assert source.content_hash == active.content_hash
    assert source.metadata.get("remote_hash") != "r2"


def test_empty_new_document_leaves_no_source_behind():
    repo, _, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1"), "b": ("Doc B", " \n ", "r1")})

    result = orchestrator.run_sync(engine, _ctx())

    assert result.sources_created == 1
    assert [s.external_id for s in repo.list_sources_by_workspace("ws-1")] == ["a"]


def test_new_version_evicts_superseded_vectors():
    repo, index, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="full")
    engine = FakeSyncEngine(documents={"a": ("Doc A", long_text(), "r1")})
    orchestrator.run_sync(engine, _ctx(scope))
    old_chunks = [chunk.id for chunk in repo.list_active_chunks()]
    engine.documents["a"] = ("Doc A", "A much shorter replacement.", "r2")

    orchestrator.run_sync(engine, _ctx(scope))

    new_chunks = [chunk.id for chunk in repo.list_active_chunks()]
    assert old_chunks and new_chunks
    assert not any(index.has_vector(chunk_id) for chunk_id in old_chunks)
    assert all(index.has_vector(chunk_id) for chunk_id in new_chunks)


def test_smart_sync_with_new_revision_but_same_text_counts_no_update():
    repo, _, orchestrator = build_orchestrator()
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha text.", "r1")})
    orchestrator.run_sync(engine, _ctx())
    engine.documents["a"] = ("Doc A", "Alpha text.", "r2")

    result = orchestrator.run_sync(engine, _ctx())

    assert engine.fetched == ["a", "a"]
    assert result.sources_created == 0
    assert result.sources_updated == 0
    assert result.chunks_created == 0
    source = repo.list_sources_by_workspace("ws-1")[0]
    assert source.metadata["remote_hash"] == "r2"


def test_source_locks_are_a_fixed_pool():
    _, _, orchestrator = build_orchestrator()
    locks = {id(orchestrator._source_lock(f"source-{n}")) for n in range(500)}

    assert orchestrator._source_lock("source-7") is orchestrator._source_lock("source-7")
    assert len(locks) <= SOURCE_LOCK_STRIPES


def test_exclusion_rules_and_metadata_first_mode():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="metadata_first", exclusion_rules=["*.tmp", "secret-*"])
    engine = FakeSyncEngine(
        documents={
            "a": ("Doc A", "Alpha.", "r1"),
            "b": ("scratch.tmp", "Temp.", "r1"),
            "secret-1": ("Payroll", "Salaries.", "r1"),
        }
    )
    orchestrator.run_sync(engine, _ctx(scope))
    assert engine.fetched == ["a"]

    engine.documents["a"] = ("Doc A", "Alpha changed.", "r2")
    engine.documents["d"] = ("Doc D", "Delta.", "r1")
    orchestrator.run_sync(engine, _ctx(scope))

    assert engine.fetched == ["a", "d"]


def test_on_demand_mode_fetches_only_requested_item():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(sync_mode="on_demand")
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1"), "b": ("Doc B", "Beta.", "r1")})

    orchestrator.run_sync(engine, _ctx(scope))
    assert engine.fetched == []

    content = orchestrator.sync_on_demand(engine, _ctx(scope), "b")
    assert content.content == "Beta."
    assert engine.fetched == ["b"]
    assert orchestrator.sync_on_demand(engine, _ctx(scope), "missing") is None
    assert [s.external_id for s in repo.list_sources_by_workspace("ws-1")] == ["b"]


def test_progress_and_audit_are_reported():
    repo, _, orchestrator = build_orchestrator()
    snapshots = []
    engine = FakeSyncEngine(documents={"a": ("Doc A", "Alpha.", "r1")})

    orchestrator.run_sync(engine, _ctx(progress=snapshots.append))

    assert snapshots[0].stage == "fetching"
    assert snapshots[-1].stage == "done"
    assert snapshots[-1].docs_discovered == 1
    assert snapshots[-1].versions_created == 1
    events = repo.list_audit_events("sync")
    assert len(events) == 1
    assert events[0].success is True
    assert events[0].payload["chunks_created"] == 1


def test_public_slack_channels_are_workspace_visible():
    repo, _, orchestrator = build_orchestrator()
    scope = make_scope(connector_type="slack")
    engine = FakeSyncEngine(name="slack", documents={"C1": ("#general", "Hello team.", "1.0")})
    original_fetch = engine.fetch_content

    def fetch_with_channel(ctx, item):
        content = original_fetch(ctx, item)
        return replace(content, metadata={"channel_id": "C1", "channel_name": "general", "is_private": False})

    engine.fetch_content = fetch_with_channel
    orchestrator.run_sync(engine, _ctx(scope))

    source = repo.list_sources_by_workspace("ws-1")[0]
    assert source.type == "slack"
    assert source.visibility == "workspace"
    assert repo.list_active_chunks()[0].metadata["channel_name"] == "general"


def test_should_fetch_content_rules():
    item = SyncableItem(external_id="a", title="A", content_hash="r2")
    seen_r2 = Source(
        id="s1", workspace_id="ws-1", user_id="u", created_by_user_id="u", type="drive", external_id="a", title="A",
        metadata={"remote_hash": "r2"},
    )
    seen_r1 = replace(seen_r2, metadata={"remote_hash": "r1"})

    assert should_fetch_content("full", seen_r2, item) is True
    assert should_fetch_content("on_demand", None, item) is False
    assert should_fetch_content("metadata_first", None, item) is True
    assert should_fetch_content("metadata_first", seen_r1, item) is False
    assert should_fetch_content("smart", seen_r2, item) is False
    assert should_fetch_content("smart", seen_r1, item) is True
    assert should_fetch_content("smart", seen_r2, replace(item, content_hash=None)) is True


def test_is_excluded_matches_title_or_external_id():
    item = SyncableItem(external_id="folder/draft-1", title="Draft notes")

    assert is_excluded(item, ["Draft*"])
    assert is_excluded(item, ["folder/*"])
    assert not is_excluded(item, ["final*"])

import threading

import pytest

from knowledge_service.core.errors import EmbeddingIndexingError
from knowledge_service.db.entities import Chunk
from knowledge_service.services.embedding_index import EmbeddingIndex
from tests.fakes import FailingEmbeddingProvider, HashingEmbeddingProvider


def _chunk(chunk_id, text):
    return Chunk(
        id=chunk_id,
        workspace_id="ws-1",
        source_id="src-1",
        source_version_id="ver-1",
        user_id="user-1",
        chunk_index=0,
        text=text,
        char_start=0,
        char_end=len(text),
        token_estimate=1,
    )


def test_index_chunks_embeds_in_batches():
    provider = HashingEmbeddingProvider()
    index = EmbeddingIndex(provider, batch_size=2)

    indexed = index.index_chunks([_chunk(f"c{i}", f"text {i}") for i in range(5)])

    assert indexed == 5
    assert [len(batch) for batch in provider.batches] == [2, 2, 1]
    assert index.size == 5


def test_search_ranks_by_cosine_and_skips_unindexed_chunks():
    index = EmbeddingIndex(HashingEmbeddingProvider())
    billing = _chunk("billing", "invoice billing payments")
    hiring = _chunk("hiring", "recruiting interviews candidates")
    index.index_chunks([billing, hiring])

    results = index.search("billing invoice", [billing, hiring, _chunk("ghost", "billing")], top_k=5)

    assert [chunk.id for chunk, _ in results][0] == "billing"
    assert "ghost" not in [chunk.id for chunk, _ in results]
    assert results[0][1] > results[-1][1]


def test_hydration_runs_once_for_concurrent_callers():
    release = threading.Event()
    calls = []

    def loader():
        calls.append(1)
        release.wait(timeout=2)
        return [_chunk("c1", "hello world")]

    index = EmbeddingIndex(HashingEmbeddingProvider(), active_chunk_loader=loader)
    threads = [threading.Thread(target=index.ensure_hydrated) for _ in range(4)]
    for thread in threads:
        thread.start()
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert index.hydrated is True
    assert index.has_vector("c1")


def test_hydration_failure_is_retried_on_next_call():
    attempts = []

    def loader():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("db unavailable")
        return []

    index = EmbeddingIndex(HashingEmbeddingProvider(), active_chunk_loader=loader)

    with pytest.raises(RuntimeError):
        index.ensure_hydrated()
    index.ensure_hydrated()

    assert index.hydrated is True
    assert len(attempts) == 2


def test_provider_failure_is_wrapped_as_indexing_error():
    index = EmbeddingIndex(FailingEmbeddingProvider())

    with pytest.raises(EmbeddingIndexingError):
        index.index_chunks([_chunk("c1", "text")])
    assert index.size == 0


def test_remove_and_clear():
    index = EmbeddingIndex(HashingEmbeddingProvider())
    index.index_chunks([_chunk("a", "one"), _chunk("b", "two")])

    assert index.remove(["a", "missing"]) == 1
    assert index.vector_for("a") is None
    index.clear()
    assert index.size == 0
    assert index.hydrated is False

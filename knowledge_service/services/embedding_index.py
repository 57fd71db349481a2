from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future

from knowledge_service.clients.embeddings_client import EmbeddingProvider
from knowledge_service.core.config import settings
from knowledge_service.core.errors import EmbeddingIndexingError, KnowledgeServiceError
from knowledge_service.core.math_utils import cosine_similarity
from knowledge_service.db.entities import Chunk

LOGGER = logging.getLogger(__name__)


class EmbeddingIndex:
    """Process-owned map of chunk id to embedding vector.

    The index is hydrated from the active chunks once per process; concurrent
    callers of :meth:`ensure_hydrated` share a single in-flight load.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        batch_size: int | None = None,
        active_chunk_loader: Callable[[], list[Chunk]] | None = None,
    ) -> None:
        self.provider = provider
        self.batch_size = batch_size or settings.EMBEDDINGS_BATCH_SIZE
        self.active_chunk_loader = active_chunk_loader
        self._vectors: dict[str, list[float]] = {}
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._hydrated = False
        self._hydration: Future | None = None

    @property
    def size(self) -> int:
        return len(self._vectors)

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    def has_vector(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def vector_for(self, chunk_id: str) -> list[float] | None:
        return self._vectors.get(chunk_id)

    def index_chunks(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        indexed = 0
        with self._write_lock:
            for start in range(0, len(chunks), self.batch_size):
                batch = list(chunks[start : start + self.batch_size])
                try:
                    vectors = self.provider.embed_batch([chunk.text for chunk in batch])
                except KnowledgeServiceError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise EmbeddingIndexingError(f"Embedding batch failed: {exc}") from exc
                if len(vectors) != len(batch):
                    raise EmbeddingIndexingError(f"Embedding provider returned {len(vectors)} vectors for {len(batch)} chunks")
                for chunk, vector in zip(batch, vectors):
                    self._vectors[chunk.id] = list(vector)
                indexed += len(batch)
        LOGGER.info("embedding_index_chunks_indexed", extra={"indexed": indexed, "index_size": self.size})
        return indexed

    def ensure_hydrated(self) -> None:
        with self._state_lock:
            if self._hydrated:
                return
            owner = self._hydration is None
            if owner:
                self._hydration = Future()
            hydration = self._hydration

        if not owner:
            hydration.result()
            return

        try:
            chunks = self.active_chunk_loader() if self.active_chunk_loader else []
            missing = [chunk for chunk in chunks if chunk.id not in self._vectors]
            if missing:
                LOGGER.info("embedding_index_hydration_started", extra={"active_chunks": len(chunks), "missing": len(missing)})
                self.index_chunks(missing)
            self._hydrated = True
            hydration.set_result(None)
            LOGGER.info("embedding_index_hydrated", extra={"index_size": self.size})
        except BaseException as exc:
            hydration.set_exception(exc)
            LOGGER.error("embedding_index_hydration_failed", extra={"error": str(exc)})
            raise
        finally:
            with self._state_lock:
                self._hydration = None

    def embed_query(self, query: str) -> list[float]:
        try:
            return list(self.provider.embed(query))
        except KnowledgeServiceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingIndexingError(f"Query embedding failed: {exc}") from exc

    def search(self, query: str, chunks: Iterable[Chunk], top_k: int) -> list[tuple[Chunk, float]]:
        """Score ``chunks`` against ``query``; chunks without a cached vector are skipped."""
        self.ensure_hydrated()
        candidates = list(chunks)
        if not candidates:
            return []
        query_vector = self.embed_query(query)
        scored: list[tuple[Chunk, float]] = []
        for chunk in candidates:
            vector = self._vectors.get(chunk.id)
            if vector is not None:
                scored.append((chunk, cosine_similarity(query_vector, vector)))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:top_k]

    def remove(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        with self._write_lock:
            for chunk_id in chunk_ids:
                if self._vectors.pop(chunk_id, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._write_lock, self._state_lock:
            self._vectors.clear()
            self._hydrated = False

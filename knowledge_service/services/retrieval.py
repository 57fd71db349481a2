from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from knowledge_service.core.config import Settings, settings as default_settings
from knowledge_service.core.logging import log_event
from knowledge_service.db.entities import Chunk, Source
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.embedding_index import EmbeddingIndex

LOGGER = logging.getLogger(__name__)

QUERY_EXPANSIONS: dict[str, list[str]] = {
    "okr": ["objectives and key results", "objective", "key result", "goal"],
    "q4": ["quarter 4", "fourth quarter", "q4 2024", "q4 2025", "q4 2026"],
    "q3": ["quarter 3", "third quarter"],
    "q2": ["quarter 2", "second quarter"],
    "q1": ["quarter 1", "first quarter"],
    "ai search": ["ai-search", "aisearch", "search ai", "search project"],
}
EXISTENCE_KEYWORDS = ("okr", "objectives", "q4", "biology", "ai search")
PREVIEW_CHARS = 120
PREVIEW_LIMIT = 5
NO_CHUNKS_REASON = "No chunks in scope/workspace"


@dataclass(frozen=True)
class RetrievalFilters:
    workspace_id: str
    requester_user_id: str
    connector_types: list[str] | None = None
    scope_id: str | None = None


@dataclass(frozen=True)
class ScoredChunk:
    chunk: Chunk
    score: float
    source: Source | None = None


@dataclass(frozen=True)
class ChunkPreview:
    chunk_id: str
    source_id: str
    title: str
    score: float
    preview: str


@dataclass
class PrimaryRetrieval:
    retrieved_count: int = 0
    top_k: int = 0
    top_score: float | None = None
    chunks: list[ChunkPreview] = field(default_factory=list)


@dataclass
class FallbackRetrieval:
    retrieved_count: int = 0
    chunks: list[ChunkPreview] = field(default_factory=list)


@dataclass
class ExistenceChecks:
    chunks_total_in_scope: int = 0
    chunks_with_keywords: dict[str, int] = field(default_factory=dict)


@dataclass
class RetrievalDecision:
    used_fallback: bool = False
    reason: str = ""


@dataclass
class RetrievalDiagnostics:
    workspace_id_used: str
    scope_id_used: str | None
    primary_retrieval: PrimaryRetrieval
    fallback_lexical: FallbackRetrieval | None = None
    merged_reranked: FallbackRetrieval = field(default_factory=FallbackRetrieval)
    existence_checks: ExistenceChecks = field(default_factory=ExistenceChecks)
    decision: RetrievalDecision = field(default_factory=RetrievalDecision)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalResult:
    chunks: list[ScoredChunk]
    diagnostics: RetrievalDiagnostics


def expand_query(query: str) -> list[str]:
    """Return the query plus synonym rewrites for every expansion key it contains."""
    lowered = query.lower()
    expansions = [query]
    for key, synonyms in QUERY_EXPANSIONS.items():
        if key in lowered:
            pattern = re.compile(re.escape(key), re.IGNORECASE)
            expansions.extend(pattern.sub(synonym, query) for synonym in synonyms)
    return list(dict.fromkeys(expansions))


def query_terms(query: str) -> list[str]:
    return [term for term in query.lower().split() if len(term) > 2]


def lexical_score(query: str, text: str, expansions: list[str] | None = None) -> float:
    lowered = text.lower()
    score = 0.0
    for phrase in expansions if expansions is not None else expand_query(query):
        if phrase.lower() in lowered:
            score += 0.5
    for term in query_terms(query):
        score += lowered.count(term) * 0.1
    return min(score, 1.0)


def lexical_search(query: str, chunks: list[Chunk], limit: int) -> list[tuple[Chunk, float]]:
    expansions = expand_query(query)
    scored = []
    for chunk in chunks:
        score = lexical_score(query, chunk.text, expansions)
        if score > 0:
            scored.append((chunk, score))
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored[:limit]


def hybrid_merge(
    primary: list[tuple[Chunk, float]],
    lexical: list[tuple[Chunk, float]],
    alpha: float,
    top_k: int,
) -> list[tuple[Chunk, float]]:
    """Weighted merge: ``alpha * vector + (1 - alpha) * lexical``; lexical-only hits keep the lexical share."""
    merged: dict[str, dict[str, Any]] = {}
    for chunk, score in primary:
        merged[chunk.id] = {"chunk": chunk, "score": score, "vec": score}
    for chunk, score in lexical:
        entry = merged.get(chunk.id)
        if entry is None:
            merged[chunk.id] = {"chunk": chunk, "score": (1 - alpha) * score, "vec": 0.0}
        else:
            entry["score"] = alpha * entry["vec"] + (1 - alpha) * score
    ranked = sorted(merged.values(), key=lambda entry: (-entry["score"], entry["chunk"].id))
    return [(entry["chunk"], entry["score"]) for entry in ranked[:top_k]]


def is_source_visible(source: Source, requester_user_id: str, connector_types: list[str] | None = None) -> bool:
    if source.visibility == "private" and source.created_by_user_id != requester_user_id:
        return False
    if source.type == "slack" and (source.metadata or {}).get("is_private") is True:
        return False
    if connector_types and source.type not in connector_types:
        return False
    return True


class RetrievalPipeline:
    """Vector retrieval with a confidence-gated lexical fallback over the active corpus."""

    def __init__(self, repo: CorpusRepository, index: EmbeddingIndex, settings: Settings | None = None) -> None:
        self.repo = repo
        self.index = index
        self.settings = settings or default_settings

    def resolve_corpus(self, filters: RetrievalFilters) -> tuple[list[Chunk], dict[str, Source]]:
        """Chunks of active versions whose source the requester may read."""
        active_versions = self.repo.list_active_source_versions(filters.workspace_id)
        if not active_versions:
            LOGGER.info("retrieval_no_active_versions", extra={"workspace_id": filters.workspace_id})
            return [], {}

        allowed: dict[str, Source] = {
            source.id: source
            for source in self.repo.list_sources_by_workspace(filters.workspace_id)
            if is_source_visible(source, filters.requester_user_id, filters.connector_types)
        }
        if not allowed:
            LOGGER.info("retrieval_no_visible_sources", extra={"workspace_id": filters.workspace_id})
            return [], {}

        version_ids = [version.id for version in active_versions if version.source_id in allowed]
        chunks = [
            chunk
            for chunk in self.repo.list_chunks_for_versions(version_ids)
            if chunk.workspace_id == filters.workspace_id and chunk.source_id in allowed
        ]
        LOGGER.info(
            "retrieval_corpus_resolved",
            extra={"workspace_id": filters.workspace_id, "sources": len(allowed), "chunks": len(chunks)},
        )
        return chunks, allowed

    def retrieve(self, query: str, filters: RetrievalFilters, top_k: int | None = None) -> RetrievalResult:
        top_k = top_k or self.settings.RETRIEVAL_DEFAULT_TOP_K
        threshold = self.settings.RETRIEVAL_SCORE_THRESHOLD
        diagnostics = RetrievalDiagnostics(
            workspace_id_used=filters.workspace_id,
            scope_id_used=filters.scope_id,
            primary_retrieval=PrimaryRetrieval(top_k=top_k),
        )

        chunks, sources = self.resolve_corpus(filters)
        diagnostics.existence_checks.chunks_total_in_scope = len(chunks)
        if not chunks:
            diagnostics.decision.reason = NO_CHUNKS_REASON
            self._log_summary(query, filters, diagnostics, 0)
            return RetrievalResult(chunks=[], diagnostics=diagnostics)

        for keyword in EXISTENCE_KEYWORDS:
            diagnostics.existence_checks.chunks_with_keywords[keyword] = sum(
                1 for chunk in chunks if keyword in chunk.text.lower()
            )

        primary = self.index.search(query, chunks, top_k)
        top_score = primary[0][1] if primary else None
        diagnostics.primary_retrieval.retrieved_count = len(primary)
        diagnostics.primary_retrieval.top_score = top_score
        diagnostics.primary_retrieval.chunks = self._previews(primary, sources)

        final = list(primary)
        if not primary or (top_score or 0.0) < threshold:
            diagnostics.decision.used_fallback = True
            diagnostics.decision.reason = (
                "Primary retrieval returned 0 results"
                if not primary
                else f"Top score {top_score:.3f} below threshold {threshold}"
            )
            lexical = lexical_search(query, chunks, top_k * 2)
            diagnostics.fallback_lexical = FallbackRetrieval(
                retrieved_count=len(lexical),
                chunks=self._previews(lexical, sources),
            )
            final = hybrid_merge(primary, lexical, self.settings.RETRIEVAL_HYBRID_ALPHA, top_k)
        else:
            diagnostics.decision.reason = f"Primary retrieval sufficient (topScore={top_score:.3f} >= {threshold})"

        selected = {chunk.id for chunk, _ in final}
        for chunk in chunks:
            if len(final) >= self.settings.RETRIEVAL_MIN_RESULTS:
                break
            if chunk.id not in selected:
                final.append((chunk, self.settings.RETRIEVAL_PADDING_SCORE))
                selected.add(chunk.id)

        results = [ScoredChunk(chunk=chunk, score=score, source=sources.get(chunk.source_id)) for chunk, score in final]
        diagnostics.merged_reranked = FallbackRetrieval(
            retrieved_count=len(results),
            chunks=self._previews(final, sources),
        )
        self._log_summary(query, filters, diagnostics, len(results))
        return RetrievalResult(chunks=results, diagnostics=diagnostics)

    @staticmethod
    def _previews(scored: list[tuple[Chunk, float]], sources: dict[str, Source]) -> list[ChunkPreview]:
        previews = []
        for chunk, score in scored[:PREVIEW_LIMIT]:
            source = sources.get(chunk.source_id)
            previews.append(
                ChunkPreview(
                    chunk_id=chunk.id,
                    source_id=chunk.source_id,
                    title=source.title if source else "Unknown",
                    score=score,
                    preview=chunk.text[:PREVIEW_CHARS],
                )
            )
        return previews

    @staticmethod
    def _log_summary(query: str, filters: RetrievalFilters, diagnostics: RetrievalDiagnostics, final_count: int) -> None:
        log_event(
            "retrieval.completed",
            payload={
                "workspace_id": filters.workspace_id,
                "scope_id": filters.scope_id,
                "query_preview": query[:50],
                "primary_retrieved": diagnostics.primary_retrieval.retrieved_count,
                "top_score": diagnostics.primary_retrieval.top_score,
                "used_fallback": diagnostics.decision.used_fallback,
                "final_retrieved": final_count,
            },
        )

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from knowledge_service.core.errors import EmbeddingIndexingError

LOGGER = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> list[float]:
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class EmbeddingsClient:
    """Client for an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(self, base_url: str | None = None, timeout_seconds: int | None = None, model_id: str | None = None):
        if base_url is None or timeout_seconds is None or model_id is None:
            from knowledge_service.core.config import settings

            base_url = base_url or settings.EMBEDDINGS_SERVICE_URL
            timeout_seconds = timeout_seconds or settings.EMBEDDINGS_TIMEOUT_SECONDS
            model_id = model_id or settings.EMBEDDINGS_MODEL_ID
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.model_id = model_id

    def embed_texts(self, texts: list[str], correlation_id: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        payload = {
            "model": self.model_id,
            "input": texts,
            "encoding_format": "float",
        }
        if correlation_id is not None:
            payload["correlation_id"] = correlation_id
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(f"{self.base_url}/v1/embeddings", json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            LOGGER.warning("embeddings_request_failed", extra={"batch_size": len(texts), "error": str(exc)})
            raise EmbeddingIndexingError(f"Embeddings request failed: {exc}") from exc
        data = body.get("data") or []
        if len(data) != len(texts):
            raise EmbeddingIndexingError(f"Embeddings service returned {len(data)} vectors for {len(texts)} inputs")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]

    def embed_text(self, text: str, correlation_id: str | None = None) -> list[float]:
        return self.embed_texts([text], correlation_id=correlation_id)[0]

    # EmbeddingProvider
    def embed(self, text: str) -> list[float]:
        return self.embed_text(text)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self.embed_texts(texts)

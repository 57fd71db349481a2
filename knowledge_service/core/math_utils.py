"""Vector helpers used by the embedding index."""

from __future__ import annotations

from collections.abc import Sequence


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Returns 0.0 for empty, zero-norm or length-mismatched vectors.
    """
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0
    dot = sum(a * b for a, b in zip(v1, v2))
    n1 = sum(a * a for a in v1) ** 0.5
    n2 = sum(b * b for b in v2) ** 0.5
    if n1 == 0.0 or n2 == 0.0:
        return 0.0
    return dot / (n1 * n2)


def estimate_tokens(text: str) -> int:
    """Rough token estimate at four characters per token."""
    return -(-len(text) // 4)

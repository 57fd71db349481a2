"""Boundary-aware character chunking with overlap.

Each window prefers to end on a paragraph break, then a sentence end, then a
word break. ``char_start``/``char_end`` describe the raw window in the source
text; ``text`` is that window with surrounding whitespace stripped.
"""

from __future__ import annotations

from dataclasses import dataclass

from knowledge_service.core.config import settings
from knowledge_service.core.math_utils import estimate_tokens

SENTENCE_ENDERS = (". ", "! ", "? ", ".\n", "!\n", "?\n")


@dataclass(frozen=True)
class TextChunk:
    text: str
    char_start: int
    char_end: int
    chunk_index: int

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.text)


def _last_index(text: str, needle: str, at_or_before: int) -> int:
    return text.rfind(needle, 0, max(0, at_or_before) + len(needle))


def _find_sentence_break(text: str, min_pos: int, max_pos: int) -> int:
    best = -1
    for ender in SENTENCE_ENDERS:
        pos = _last_index(text, ender, max_pos)
        if pos >= min_pos and pos > best:
            best = pos + len(ender)
    return best


def chunk_text(
    text: str,
    *,
    target_size: int | None = None,
    min_size: int | None = None,
    max_size: int | None = None,
    overlap: int | None = None,
) -> list[TextChunk]:
    target_size = target_size or settings.CHUNK_TARGET_CHARS
    min_size = min_size or settings.CHUNK_MIN_CHARS
    max_size = max_size or settings.CHUNK_MAX_CHARS
    overlap = settings.CHUNK_OVERLAP_CHARS if overlap is None else overlap

    if not text:
        return []

    chunks: list[TextChunk] = []
    length = len(text)
    position = 0
    while position < length:
        end = min(position + target_size, length)

        if end < length:
            paragraph_break = _last_index(text, "\n\n", end)
            if paragraph_break > position + min_size:
                end = paragraph_break + 2
            else:
                sentence_end = _find_sentence_break(text, position + min_size, end)
                if sentence_end > 0:
                    end = sentence_end
                else:
                    word_break = _last_index(text, " ", end)
                    if word_break > position + min_size:
                        end = word_break + 1

        if end - position > max_size:
            word_break = _last_index(text, " ", position + max_size - 1)
            end = word_break + 1 if word_break > position else position + max_size

        piece = text[position:end].strip()
        if piece:
            chunks.append(TextChunk(text=piece, char_start=position, char_end=end, chunk_index=len(chunks)))

        if end >= length:
            break
        position = max(position + 1, end - overlap)

    return chunks

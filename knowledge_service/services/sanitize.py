from __future__ import annotations

import re
from dataclasses import dataclass

from knowledge_service.core.config import settings

TRUNCATION_NOTICE = "\n\n[Content truncated for length]"

_INJECTION_MARKERS = tuple(
    re.compile(pattern, flags=re.IGNORECASE)
    for pattern in (
        r"(?:^|\n)\s*(?:system|assistant|developer|admin|user):\s*",
        r"(?:^|\n)\s*you are (?:now|a|an)\s+",
        r"(?:^|\n)\s*ignore (?:previous|all|the) (?:instructions|prompts?|rules?)",
        r"(?:^|\n)\s*forget (?:everything|all|previous)",
        r"(?:^|\n)\s*new instructions?:",
        r"(?:^|\n)\s*\[INST\]",
        r"(?:^|\n)\s*\[/INST\]",
        r"(?:^|\n)\s*<\|im_start\|>",
        r"(?:^|\n)\s*<\|im_end\|>",
        r"(?:^|\n)\s*execute:?\s*",
        r"(?:^|\n)\s*run:?\s*",
        r"(?:^|\n)\s*print:?\s*",
        r"(?:^|\n)\s*repeat (?:this|the following|everything)",
        r"(?:^|\n)\s*output (?:this|the following|everything)",
    )
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class SanitizeResult:
    sanitized: str
    original_length: int
    sanitized_length: int
    markers_removed: int
    source_type: str


def sanitize_content(
    content: str,
    *,
    max_length: int | None = None,
    source_type: str = "unknown",
    strip_markers: bool = True,
) -> SanitizeResult:
    """Treat external text as data: drop injection markers, normalize whitespace, cap length."""
    max_length = max_length or settings.SANITIZE_MAX_LENGTH
    text = _CONTROL_CHARS.sub("", (content or "").replace("\r\n", "\n"))

    markers_removed = 0
    if strip_markers:
        for marker in _INJECTION_MARKERS:
            text, count = marker.subn("", text)
            if count:
                markers_removed += 1

    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = "\n".join(line.rstrip() for line in text.split("\n")).strip()

    if len(text) > max_length:
        text = text[:max_length] + TRUNCATION_NOTICE

    return SanitizeResult(
        sanitized=text,
        original_length=len(content or ""),
        sanitized_length=len(text),
        markers_removed=markers_removed,
        source_type=source_type,
    )

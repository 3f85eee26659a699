"""Boundary normalization for LLM extraction output and research text bounding."""
from __future__ import annotations

from typing import Any, Iterable

from app.research_core.models.interfaces import ExtractedField

HARD_LIMIT = 12000
HEAD_CHARS = 8000
TAIL_CHARS = 2000
MIDDLE_MARKER = "\n\n[... middle section truncated ...]\n\n"
TAIL_MARKER = "\n\n[... truncated ...]"

_QUALITIES = ("explicit", "inferred", "partial")


def truncate_research_text(text: str, soft_limit: int) -> str:
    """Bound research text before extraction, keeping head and tail of very long input."""
    if len(text) > HARD_LIMIT:
        return text[:HEAD_CHARS] + MIDDLE_MARKER + text[-TAIL_CHARS:]
    if len(text) > soft_limit:
        return text[:soft_limit] + TAIL_MARKER
    return text


def truncate_with_marker(text: str, limit: int, marker: str = "\n[... truncated ...]") -> str:
    return text[:limit] + marker if len(text) > limit else text


def _clamp(value: Any, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return max(0.0, min(1.0, number))


def _source_indices(raw: Any) -> list[int]:
    if not isinstance(raw, list):
        return []
    indices: list[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            indices.append(item)
        elif isinstance(item, str) and item.strip().isdigit():
            indices.append(int(item.strip()))
    return indices


def normalize_field(raw: Any) -> ExtractedField | None:
    """Map either the ``{value, confidence, sources, quality}`` shape or a bare value."""
    if raw is None:
        return None
    if isinstance(raw, dict) and "value" in raw:
        if raw["value"] is None:
            return None
        quality = raw.get("quality")
        return ExtractedField(
            value=raw["value"],
            confidence=_clamp(raw.get("confidence")),
            sources=_source_indices(raw.get("sources")),
            quality=quality if quality in _QUALITIES else None,
        )
    return ExtractedField(value=raw, confidence=0.5, sources=[], quality=None)


def normalize_extraction(raw: dict[str, Any], keys: Iterable[str]) -> dict[str, ExtractedField | None]:
    return {key: normalize_field(raw.get(key)) for key in keys}


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)) and not value:
        return False
    return True

"""Heuristic confidence scoring and the blended per-field score."""
from __future__ import annotations

import re
from datetime import datetime, timezone

LLM_WEIGHT = 0.6
HEURISTIC_WEIGHT = 0.4
AUTO_APPROVE_THRESHOLD = 0.80
INVALID_VALUE_PENALTY = 0.2

_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_DIGIT_RE = re.compile(r"\d")


def _source_quality(lowered: str, sources: list[str]) -> float:
    if "port authority" in lowered or "official" in lowered or "government" in lowered:
        return 0.3
    if "directory" in lowered or "maritime" in lowered:
        return 0.2
    if sources:
        return 0.1
    return 0.05


def _source_count(sources: list[str]) -> float:
    if len(sources) >= 2:
        return 0.3
    if len(sources) == 1:
        return 0.15
    return 0.05


def _recency(content: str, current_year: int) -> float:
    match = _YEAR_RE.search(content)
    if not match:
        return 0.1
    age = current_year - int(match.group(1))
    if age <= 1:
        return 0.2
    if age <= 3:
        return 0.1
    return 0.05


def _completeness(content: str) -> float:
    detailed = len(content) > 100
    if detailed and _DIGIT_RE.search(content):
        return 0.2
    if detailed:
        return 0.1
    return 0.05


def score_confidence(content: str, sources: list[str], current_year: int | None = None) -> float:
    """Score a research text blob in [0, 1] from four capped sub-scores."""
    year = current_year or datetime.now(timezone.utc).year
    lowered = content.lower()
    score = (
        _source_quality(lowered, sources)
        + _source_count(sources)
        + _recency(content, year)
        + _completeness(content)
    )
    return min(round(score, 6), 1.0)


def blend_confidence(llm_confidence: float, heuristic_confidence: float) -> float:
    blended = LLM_WEIGHT * llm_confidence + HEURISTIC_WEIGHT * heuristic_confidence
    return max(0.0, min(1.0, blended))


def is_auto_approved(confidence: float) -> bool:
    return confidence > AUTO_APPROVE_THRESHOLD

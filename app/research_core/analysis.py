"""Conflict parsing and field-update recommendation matching."""
from __future__ import annotations

import re
from typing import Any

from app.research_core.models.interfaces import (
    ConflictCandidate,
    FieldAnalysis,
    FieldConflict,
)

HIGH_PRIORITY_FIELDS = frozenset(
    {"coordinates", "capacity", "operatorType", "parentCompanies", "portAuthority"}
)
_PRIORITIES = ("high", "medium", "low")


def to_snake(key: str) -> str:
    return re.sub(r"([A-Z])", r"_\1", key).lower()


def default_priority(field_key: str) -> str:
    return "high" if field_key in HIGH_PRIORITY_FIELDS else "medium"


def parse_conflicts(raw: Any, titles: list[str]) -> dict[str, FieldConflict]:
    """Index the conflict pass output by extraction key. Malformed entries are skipped."""
    conflicts: dict[str, FieldConflict] = {}
    entries = raw.get("conflicts") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        return conflicts

    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("field"), str):
            continue
        candidates: list[ConflictCandidate] = []
        for cv in entry.get("conflictingValues") or []:
            if not isinstance(cv, dict):
                continue
            index = cv.get("sourceQueryIndex")
            index = index if isinstance(index, int) and not isinstance(index, bool) else None
            title = cv.get("sourceQueryTitle")
            if not title and index is not None and 0 <= index < len(titles):
                title = titles[index]
            try:
                confidence = float(cv["confidence"])
            except (KeyError, TypeError, ValueError):
                confidence = 0.5
            if confidence != confidence:
                confidence = 0.5
            candidates.append(
                ConflictCandidate(
                    value=cv.get("value"),
                    source_query_index=index,
                    source_query_title=title,
                    confidence=max(0.0, min(1.0, confidence)),
                    evidence=cv.get("evidence"),
                )
            )
        field_name = entry["field"].strip()
        conflicts[field_name] = FieldConflict(
            field=field_name,
            candidates=candidates,
            suggested_resolution=entry.get("suggestedResolution"),
        )
    return conflicts


def analyses_from_response(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, dict) and isinstance(raw.get("analyses"), list):
        return [a for a in raw["analyses"] if isinstance(a, dict)]
    if isinstance(raw, list):
        return [a for a in raw if isinstance(a, dict)]
    return []


def match_analysis(
    analyses: list[dict[str, Any]],
    key: str,
    label: str,
    position: int,
    aliases: tuple[str, ...] = (),
) -> dict[str, Any] | None:
    """Find the analysis entry for one field.

    Tried in order: exact key/label, substring either way, snake_case key,
    field aliases, then the entry at the same position.
    """
    named = [(str(a.get("field", "")).lower().strip(), a) for a in analyses if a.get("field")]
    key_l, label_l, snake = key.lower(), label.lower(), to_snake(key)

    for name, analysis in named:
        if name in (key_l, label_l):
            return analysis
    for name, analysis in named:
        if name in key_l or key_l in name or name in label_l or label_l in name:
            return analysis
    for name, analysis in named:
        if name == snake or snake in name:
            return analysis
    for name, analysis in named:
        if any(alias in name for alias in aliases):
            return analysis
    if 0 <= position < len(analyses):
        return analyses[position]
    return None


def analysis_from_entry(entry: dict[str, Any], key: str) -> FieldAnalysis:
    should_update = entry.get("shouldUpdate")
    priority = entry.get("updatePriority")
    return FieldAnalysis(
        should_update=bool(should_update) if should_update is not None else True,
        reasoning=str(entry.get("reasoning") or "No specific reasoning provided"),
        update_priority=priority if priority in _PRIORITIES else default_priority(key),
    )


def fallback_analysis(key: str, current: Any, proposed: Any, confidence: float) -> FieldAnalysis:
    """Deterministic rule used when the analysis pass fails or cannot be matched."""
    should_update = current != proposed and confidence >= 0.5
    return FieldAnalysis(
        should_update=should_update,
        reasoning=(
            "Proposed value differs from current and has sufficient confidence"
            if should_update
            else "Insufficient confidence or no change needed"
        ),
        update_priority=default_priority(key),
    )

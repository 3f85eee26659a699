from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


Quality = Literal["explicit", "inferred", "partial"]
Priority = Literal["high", "medium", "low"]


@dataclass(slots=True)
class ResearchQuery:
    name: str
    title: str
    prompt: str
    model: str | None = None
    system_prompt: str | None = None


@dataclass(slots=True)
class QueryOutcome:
    query: ResearchQuery
    content: str
    sources: list[str] = field(default_factory=list)

    @property
    def section(self) -> str:
        return f"{self.query.title}\n\n{self.content}"


@dataclass(slots=True)
class FailedQuery:
    query: ResearchQuery
    error: BaseException
    retryable: bool


@dataclass(slots=True)
class ExtractedField:
    """Canonical form of one extracted field, whatever shape the LLM returned."""

    value: Any
    confidence: float = 0.5
    sources: list[int] = field(default_factory=list)
    quality: Quality | None = None


@dataclass(slots=True)
class ConflictCandidate:
    value: Any
    source_query_index: int | None
    source_query_title: str | None
    confidence: float
    evidence: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflictingValue": self.value,
            "sourceQuery": self.source_query_title or f"Query {self.source_query_index}",
            "sourceIndex": self.source_query_index,
            "confidence": self.confidence,
            "evidence": self.evidence,
        }


@dataclass(slots=True)
class FieldConflict:
    field: str
    candidates: list[ConflictCandidate] = field(default_factory=list)
    suggested_resolution: str | None = None

    @property
    def has_conflict(self) -> bool:
        return len(self.candidates) > 1


@dataclass(slots=True)
class FieldAnalysis:
    should_update: bool
    reasoning: str
    update_priority: Priority


@dataclass(slots=True)
class FieldProposal:
    field: str
    current_value: Any
    proposed_value: Any
    confidence: float
    should_update: bool
    reasoning: str
    sources: list[str] = field(default_factory=list)
    update_priority: Priority = "medium"
    validation_errors: list[str] | None = None
    validation_warnings: list[str] | None = None
    conflicts: list[ConflictCandidate] | None = None
    has_conflict: bool = False
    llm_quality: Quality | None = None
    auto_approved: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "field": self.field,
            "currentValue": self.current_value,
            "proposedValue": self.proposed_value,
            "confidence": round(self.confidence, 4),
            "shouldUpdate": self.should_update,
            "reasoning": self.reasoning,
            "sources": self.sources,
            "updatePriority": self.update_priority,
            "hasConflict": self.has_conflict,
            "autoApproved": self.auto_approved,
        }
        if self.validation_errors:
            data["validationErrors"] = self.validation_errors
        if self.validation_warnings:
            data["validationWarnings"] = self.validation_warnings
        if self.conflicts:
            data["conflicts"] = [c.to_dict() for c in self.conflicts]
        if self.llm_quality:
            data["llmQuality"] = self.llm_quality
        return data

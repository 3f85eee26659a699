from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from loguru import logger

from app import llm_client
from app.agents.profiles import FieldSpec, OperatorProfile, PortProfile
from app.errors import ErrorCategory, ResearchAborted, ResearchError
from app.models.events import SSEEvent
from app.research_core import analysis
from app.research_core.confidence import (
    INVALID_VALUE_PENALTY,
    blend_confidence,
    is_auto_approved,
    score_confidence,
)
from app.research_core.extraction import (
    has_value,
    normalize_extraction,
    truncate_research_text,
    truncate_with_marker,
)
from app.research_core.models.interfaces import (
    ExtractedField,
    FailedQuery,
    FieldAnalysis,
    FieldConflict,
    FieldProposal,
    QueryOutcome,
    ResearchQuery,
)
from app.research_core.validators import critical_errors, validate_coordinates
from app.services import database as db
from app.services import logger as log_service
from app.services import streaming
from app.tools.research_provider import execute_research_query

MAX_REPORT_CHARS = 500 * 1024
REPORT_TRUNCATION_MARKER = "\n\n[... report truncated due to size limit ...]"
SECTION_SEPARATOR = "\n\n---\n\n"


def prepare_report(text: str) -> str:
    """Clean research text for storage: no NUL bytes, bounded size."""
    report = (text or "").strip().replace("\0", "")
    if len(report) > MAX_REPORT_CHARS:
        report = report[:MAX_REPORT_CHARS] + REPORT_TRUNCATION_MARKER
    return report


def _short_title(title: str) -> str:
    return title.removeprefix("## ")


@dataclass(slots=True)
class _Draft:
    """Working state of one extracted field between extraction and proposal."""

    spec: FieldSpec
    extracted: ExtractedField
    confidence: float = 0.5
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def value(self) -> Any:
        return self.extracted.value


class DeepResearchOrchestrator:
    """Runs one deep-research pass for a port or terminal operator.

    Stages, each announced with a status event carrying monotonically increasing
    progress:
      1. Fan out the profile's queries in parallel, retrying retryable failures once
      2. Geocode (ports without coordinates only)
      3. Extract structured fields with one JSON LLM pass
      4. Blend LLM and heuristic confidence, then validate
      5. Detect cross-query conflicts (best effort)
      6. Batch field-update analysis, with a deterministic fallback
      7. Summary and strategic notes
      8. Preview, report persistence, complete
    """

    RETRY_DELAY_S = 2.0

    def __init__(
        self,
        profile: PortProfile | OperatorProfile,
        *,
        cancel_event: asyncio.Event | None = None,
    ):
        self.profile = profile
        self.entity = profile.entity
        self.entity_id = str(profile.entity["id"])
        self.cancel_event = cancel_event
        self._progress = 0.0

    # --- events -------------------------------------------------------

    def _status(self, message: str, step: str, progress: float | None = None) -> SSEEvent:
        value = self.profile.progress[step] if progress is None else progress
        self._progress = max(self._progress, value)
        log_service.log_research_step(self.entity_id, step, "started", {"progress": self._progress})
        return streaming.status(message, step, self._progress)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ResearchAborted()

    # --- queries ------------------------------------------------------

    async def _run_query(self, query: ResearchQuery) -> QueryOutcome:
        result = await execute_research_query(
            query.prompt,
            query.name,
            cancel_event=self.cancel_event,
            system_prompt=query.system_prompt,
            model=query.model,
        )
        return QueryOutcome(query=query, content=result.content, sources=result.sources)

    @staticmethod
    def _is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, ResearchAborted):
            return False
        if isinstance(exc, ResearchError):
            return exc.retryable and exc.category != ErrorCategory.AUTH_ERROR
        return True

    def _collect(
        self,
        queries: list[ResearchQuery],
        results: list[Any],
        outcomes: dict[str, QueryOutcome],
    ) -> list[FailedQuery]:
        failed: list[FailedQuery] = []
        for query, result in zip(queries, results):
            if isinstance(result, QueryOutcome):
                outcomes[query.name] = result
                logger.info(f"[Deep Research] {self.profile.name} - {query.name} query completed")
                continue
            if isinstance(result, ResearchAborted) or not isinstance(result, Exception):
                raise result
            retryable = self._is_retryable(result)
            logger.warning(
                f"[Deep Research] {self.profile.name} - {query.name} query failed "
                f"(retryable={retryable}): {result}"
            )
            failed.append(FailedQuery(query=query, error=result, retryable=retryable))
        return failed

    # --- LLM passes ---------------------------------------------------

    def _extraction_prompt(self, outcomes: list[QueryOutcome], research_text: str) -> str:
        index_desc = ", ".join(f"{i}={_short_title(o.query.title)}" for i, o in enumerate(outcomes))
        query_lines = "\n".join(
            f"Query {i} ({_short_title(o.query.title)}): {o.query.prompt}" for i, o in enumerate(outcomes)
        )
        notes = self.profile.extraction_notes()
        return f"""
Extract structured data from the research findings below. For each field you extract, provide:
1. The extracted value
2. Your confidence in the extraction (0.0 to 1.0, where 1.0 = explicit mention, 0.5 = inferred, 0.3 = partial/uncertain)
3. Which research query/queries provided this information (use query indices: {index_desc})
4. Quality indicator: "explicit" (directly stated), "inferred" (logically derived), or "partial" (incomplete/uncertain)

RESEARCH QUERIES:
{query_lines}

RESEARCH FINDINGS:
{research_text}

{self.profile.describe()}

Return JSON with this structure (query indices: {index_desc}):
{self.profile.extraction_schema()}

IMPORTANT:
- Use null for value if the field is not found in the research
- Confidence should reflect how certain you are about the extraction
- Sources should list all query indices that mention this information
- Quality should indicate how the information was found
{notes}
"""

    def _extracted_lines(self, drafts: list[_Draft]) -> str:
        by_key = {d.spec.key: d for d in drafts}
        lines = []
        for spec in self.profile.fields:
            draft = by_key.get(spec.key)
            shown = json.dumps(draft.value) if draft is not None else "null"
            lines.append(f"- {spec.label}: {shown}")
        return "\n".join(lines)

    async def _detect_conflicts(
        self, outcomes: list[QueryOutcome], drafts: list[_Draft]
    ) -> dict[str, FieldConflict]:
        blocks = "\n---\n".join(
            f"\nQuery {i} ({_short_title(o.query.title)}):\n{o.query.prompt}\n\nResult:\n"
            f"{truncate_with_marker(o.content, 1000, '...')}\n"
            for i, o in enumerate(outcomes)
        )
        field_names = " | ".join(spec.extract_key for spec in self.profile.fields)
        prompt = f"""
Analyze the research queries below and identify any conflicts or discrepancies in the extracted data.

RESEARCH QUERIES:
{blocks}

EXTRACTED DATA:
{self._extracted_lines(drafts)}

Identify:
1. Fields where different queries provide conflicting values
2. Fields where values are inconsistent across queries
3. Confidence in each conflicting value
4. Suggested resolution (if possible)

Return JSON:
{{
  "conflicts": [
    {{
      "field": "{field_names}",
      "conflictingValues": [
        {{"value": "string | object", "sourceQueryIndex": 0, "sourceQueryTitle": "string", "confidence": 0.0-1.0, "evidence": "string - quote from research"}}
      ],
      "suggestedResolution": "string | null"
    }}
  ]
}}
"""
        titles = [_short_title(o.query.title) for o in outcomes]
        try:
            raw = await llm_client.complete_json(prompt, caller="conflict_detection", temperature=0.2)
        except Exception as exc:
            logger.warning(f"[Deep Research] {self.profile.name} - conflict detection failed: {exc}")
            return {}
        return analysis.parse_conflicts(raw, titles)

    def _relevant_research(self, spec: FieldSpec, outcomes: list[QueryOutcome]) -> str:
        for outcome in outcomes:
            if outcome.query.name == spec.query_name:
                return truncate_with_marker(outcome.content, 2000)
        return ""

    async def _analyze_fields(
        self,
        drafts: list[_Draft],
        current: dict[str, Any],
        outcomes: list[QueryOutcome],
    ) -> list[dict[str, Any]] | None:
        """Batch recommendation pass. None when the call fails."""
        blocks = "\n---\n".join(
            f"""
FIELD: {d.spec.label} (key: {d.spec.key})
CURRENT VALUE: {json.dumps(current.get(d.spec.key) or "null", default=str)}
PROPOSED VALUE: {json.dumps(d.value, default=str)}
CONFIDENCE SCORE: {d.confidence:.2f}
RELEVANT RESEARCH:
{self._relevant_research(d.spec, outcomes)}
"""
            for d in drafts
        )
        prompt = f"""
You are evaluating whether to update multiple {self.profile.noun} database fields. Analyze each field independently.

{self.profile.describe()}

FIELDS TO EVALUATE:
{blocks}

For each field, evaluate:
1. Should this field be updated? (Consider if proposed value is more accurate/complete)
2. Why or why not? (Provide reasoning)
3. What is the update priority? (high/medium/low - high for critical fields)

Return JSON object with "analyses" array:
{{
  "analyses": [
    {{"field": "field_key", "shouldUpdate": true, "reasoning": "string", "updatePriority": "high" | "medium" | "low"}}
  ]
}}
"""
        try:
            raw = await llm_client.complete_json(prompt, caller="field_analysis", temperature=0.2)
        except Exception as exc:
            logger.warning(f"[Deep Research] {self.profile.name} - field analysis failed, using fallback: {exc}")
            return None
        return analysis.analyses_from_response(raw)

    async def _summarize(self, research_text: str) -> str:
        text = truncate_with_marker(research_text, 4000)
        prompt = f"Summarize the key findings from this {self.profile.noun} research in 2-3 sentences:\n\n{text}"
        try:
            summary = await llm_client.complete_text(prompt, caller="research_summary", temperature=0.3)
        except Exception as exc:
            logger.warning(f"[Deep Research] {self.profile.name} - summary failed: {exc}")
            summary = ""
        return summary.strip() or research_text[:200]

    async def _notes(self, research_text: str, summary: str) -> dict[str, str]:
        existing = self.entity.get("strategicNotes") or ""
        text = truncate_with_marker(research_text, 6000, "\n\n[... truncated for token limits ...]")
        prompt = f"""
Based on the research findings below, generate strategic intelligence notes for this {self.profile.noun}.
Include:
- Strategic insights not captured in structured fields
- Operational context
- Recent developments or changes
- Data quality observations

RESEARCH FINDINGS:
{text}

CURRENT NOTES:
{existing or "(none)"}

Format: Append new findings to existing notes with a separator.
Return JSON:
{{
  "newFindings": "string - new intelligence findings",
  "combinedNotes": "string - existing notes + new findings with separator"
}}
"""
        try:
            raw = await llm_client.complete_json(prompt, caller="strategic_notes", temperature=0.4)
            return {
                "currentNotes": existing,
                "newFindings": str(raw.get("newFindings") or ""),
                "combinedNotes": str(raw.get("combinedNotes") or existing),
            }
        except Exception as exc:
            logger.warning(f"[Deep Research] {self.profile.name} - notes generation failed, appending summary: {exc}")

        header = f"--- Deep Research {datetime.now(timezone.utc).date().isoformat()} ---"
        block = f"{header}\n{summary}"
        return {
            "currentNotes": existing,
            "newFindings": f"{header}\nKey findings from research: {summary}",
            "combinedNotes": f"{existing}\n\n{block}" if existing else block,
        }

    # --- scoring and proposals ----------------------------------------

    @staticmethod
    def _heuristic(draft: _Draft, outcomes: list[QueryOutcome]) -> float:
        chosen = [outcomes[i] for i in draft.extracted.sources if 0 <= i < len(outcomes)]
        if not chosen:
            chosen = [o for o in outcomes if o.query.name == draft.spec.query_name]
        if not chosen:
            chosen = outcomes
        content = "\n\n".join(o.content for o in chosen)
        sources = list(dict.fromkeys(s for o in chosen for s in o.sources))
        return score_confidence(content, sources)

    def _validate(self, drafts: list[_Draft]) -> list[_Draft]:
        critical: list[str] = []
        for draft in drafts:
            validator = draft.spec.validator
            if validator is None:
                continue
            result = validator(draft.value)
            draft.errors, draft.warnings = result.errors, result.warnings
            if result.is_valid or result.corrected_value is not None:
                draft.extracted.value = result.corrected_value
            if not result.is_valid:
                draft.confidence = max(0.0, draft.confidence - INVALID_VALUE_PENALTY)
            severe = critical_errors(result)
            if severe:
                critical.append(f"{draft.spec.extract_key}: {'; '.join(severe)}")

        if critical:
            raise ResearchError(
                ErrorCategory.VALIDATION_ERROR,
                "Critical validation errors detected. Please review the extracted data.",
                original_error=" | ".join(critical),
                retryable=False,
            )
        return [d for d in drafts if has_value(d.value)]

    def _proposal(
        self,
        draft: _Draft,
        index: int,
        current: dict[str, Any],
        analyses: list[dict[str, Any]] | None,
        conflicts: dict[str, FieldConflict],
        outcomes: list[QueryOutcome],
        all_sources: list[str],
    ) -> FieldProposal:
        spec = draft.spec
        current_value = current.get(spec.key)
        entry = (
            analysis.match_analysis(analyses, spec.key, spec.label, index, spec.aliases)
            if analyses
            else None
        )
        verdict: FieldAnalysis = (
            analysis.analysis_from_entry(entry, spec.key)
            if entry is not None
            else analysis.fallback_analysis(spec.key, current_value, draft.value, draft.confidence)
        )
        conflict = conflicts.get(spec.extract_key) or conflicts.get(spec.key)
        titles = [
            _short_title(outcomes[i].query.title) for i in draft.extracted.sources if 0 <= i < len(outcomes)
        ]
        return FieldProposal(
            field=spec.key,
            current_value=current_value,
            proposed_value=draft.value,
            confidence=draft.confidence,
            should_update=verdict.should_update,
            reasoning=verdict.reasoning,
            sources=list(dict.fromkeys(titles)) or all_sources,
            update_priority=verdict.update_priority,
            validation_errors=draft.errors or None,
            validation_warnings=draft.warnings or None,
            conflicts=conflict.candidates if conflict else None,
            has_conflict=bool(conflict and conflict.has_conflict),
            llm_quality=draft.extracted.quality,
            auto_approved=is_auto_approved(draft.confidence),
        )

    @staticmethod
    def _coordinates_proposal(located: Any) -> FieldProposal:
        check = validate_coordinates(located.latitude, located.longitude)
        confidence = 0.9 if check.is_valid else 0.5
        proposed = check.corrected_value or {"lat": located.latitude, "lon": located.longitude}
        return FieldProposal(
            field="coordinates",
            current_value=None,
            proposed_value=proposed,
            confidence=confidence,
            should_update=True,
            reasoning="Location geocoded from port name and country using OpenStreetMap",
            sources=["OpenStreetMap"],
            update_priority="medium",
            validation_errors=check.errors or None,
            validation_warnings=check.warnings or None,
            auto_approved=is_auto_approved(confidence),
        )

    @staticmethod
    def _data_to_update(proposals: list[FieldProposal], summary: str) -> dict[str, Any]:
        data: dict[str, Any] = {
            "lastDeepResearchAt": datetime.now(timezone.utc).isoformat(),
            "lastDeepResearchSummary": summary,
        }
        for proposal in proposals:
            value = proposal.proposed_value
            if not has_value(value) or proposal.field == "portId":
                continue
            if proposal.field == "coordinates":
                if isinstance(value, dict) and "lat" in value and "lon" in value:
                    data["latitude"] = value["lat"]
                    data["longitude"] = value["lon"]
                continue
            data[proposal.field] = value
        return data

    # --- run ----------------------------------------------------------

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        """Yield status events, then preview, optional persistence error, then complete."""
        profile = self.profile
        try:
            yield self._status("Initializing research...", "init")
            self._check_cancelled()

            queries = profile.queries()
            yield self._status(f"Running {len(queries)} research queries in parallel...", "parallel_queries")
            results = await asyncio.gather(*(self._run_query(q) for q in queries), return_exceptions=True)
            outcomes_by_name: dict[str, QueryOutcome] = {}
            failed = self._collect(queries, list(results), outcomes_by_name)

            retryable = [f for f in failed if f.retryable]
            if retryable:
                yield self._status(f"Retrying {len(retryable)} failed query/queries...", "retry_queries")
                await asyncio.sleep(self.RETRY_DELAY_S)
                for failure in retryable:
                    self._check_cancelled()
                    try:
                        outcomes_by_name[failure.query.name] = await self._run_query(failure.query)
                        logger.info(f"[Deep Research] {profile.name} - {failure.query.name} retry succeeded")
                    except ResearchAborted:
                        raise
                    except Exception as exc:
                        logger.error(f"[Deep Research] {profile.name} - {failure.query.name} retry failed: {exc}")

            outcomes = [outcomes_by_name[q.name] for q in queries if q.name in outcomes_by_name]
            if not outcomes:
                raise ResearchError(
                    ErrorCategory.API_ERROR,
                    "All research queries failed. Please try again later.",
                    original_error="; ".join(f"{f.query.name}: {f.error}" for f in failed),
                    retryable=any(f.retryable for f in failed),
                )
            yield self._status(
                f"Research complete. {len(outcomes)}/{len(queries)} queries successful.",
                "queries_complete",
            )

            research_text = SECTION_SEPARATOR.join(o.section for o in outcomes)
            all_sources = list(dict.fromkeys(s for o in outcomes for s in o.sources))
            current = profile.current_values()

            located = None
            if profile.geocodes:
                if current.get("coordinates"):
                    yield self._status(
                        "Port already has coordinates, skipping geocoding", "geocode", profile.progress["geocode_done"]
                    )
                else:
                    yield self._status("Geocoding port location...", "geocode")
                    try:
                        located = await profile.locate()
                    except Exception as exc:
                        logger.warning(f"[Deep Research] {profile.name} - geocoding failed: {exc}")
                    if located is not None:
                        message = f"Location found: {located.latitude}, {located.longitude}"
                    else:
                        message = "Warning: Could not geocode port location"
                    yield self._status(message, "geocode", profile.progress["geocode_done"])

            self._check_cancelled()
            yield self._status("Extracting structured data...", "extract")
            extract_text = truncate_research_text(research_text, profile.extract_soft_limit)
            raw = await llm_client.complete_json(
                self._extraction_prompt(outcomes, extract_text), caller="field_extraction"
            )
            extracted = normalize_extraction(raw, [spec.extract_key for spec in profile.fields])
            drafts = [
                _Draft(spec=spec, extracted=extracted[spec.extract_key])
                for spec in profile.fields
                if extracted.get(spec.extract_key) is not None
            ]

            yield self._status("Calculating confidence scores...", "confidence")
            for draft in drafts:
                draft.confidence = blend_confidence(draft.extracted.confidence, self._heuristic(draft, outcomes))

            yield self._status("Validating extracted data...", "validate")
            drafts = self._validate(drafts)

            self._check_cancelled()
            yield self._status("Detecting conflicts...", "conflict_detection")
            conflicts = await self._detect_conflicts(outcomes, drafts) if drafts else {}

            yield self._status("Analyzing field updates...", "llm_analysis")
            analyses = await self._analyze_fields(drafts, current, outcomes) if drafts else None
            proposals = [
                self._proposal(d, i, current, analyses, conflicts, outcomes, all_sources)
                for i, d in enumerate(drafts)
            ]
            if located is not None:
                proposals.append(self._coordinates_proposal(located))

            summary = await self._summarize(research_text)

            self._check_cancelled()
            yield self._status("Generating intelligence notes...", "notes")
            notes = await self._notes(research_text, summary)

            yield self._status("Preparing changes for review...", "prepare")
            data_to_update = self._data_to_update(proposals, summary)
            suggested = next((d.value for d in drafts if d.spec.key == "portId"), None)
            port_change = await profile.port_change(suggested, data_to_update)

            proposals.append(
                FieldProposal(
                    field="strategicNotes",
                    current_value=notes["currentNotes"],
                    proposed_value=notes["combinedNotes"],
                    confidence=0.7,
                    should_update=True,
                    reasoning="Intelligence notes generated from research findings",
                    sources=all_sources,
                    update_priority="low",
                    auto_approved=False,
                )
            )
            data_to_update["strategicNotes"] = notes["combinedNotes"]

            payload: dict[str, Any] = {
                "field_proposals": [p.to_dict() for p in proposals],
                "notes_proposal": notes,
                "research_queries": [
                    {"query": o.query.prompt[:100] + "...", "title": o.query.title} for o in outcomes
                ],
                "full_report": research_text,
                "concise_summary": summary,
                "data_to_update": data_to_update,
                "queries_succeeded": len(outcomes),
                "queries_failed": len(queries) - len(outcomes),
            }
            if profile.kind == "operator":
                payload["port_change_suggestion"] = port_change

            yield self._status("Research complete - Review changes", "complete")
            yield streaming.preview(payload)
            log_service.log_research_step(
                self.entity_id, "preview", "completed", {"proposals": len(proposals)}
            )

            try:
                await db.save_report(profile.kind, self.entity_id, prepare_report(research_text))
            except Exception as exc:
                log_service.log_db_operation(
                    "update", f"{profile.kind} report", "failed", details=self.entity_id, error=str(exc)
                )
                yield streaming.error_from_exception(
                    ResearchError(
                        ErrorCategory.DATABASE_ERROR,
                        "Research completed but failed to save report. Report will not persist after refresh.",
                        original_error=str(exc),
                        retryable=True,
                    )
                )

            yield streaming.complete("Research complete", proposals=len(proposals))
        except Exception as exc:
            log_service.log_research_step(self.entity_id, "run", "failed", {"error": str(exc)})
            logger.error(f"[Deep Research] {profile.name} - research failed: {exc!r}")
            yield streaming.error_from_exception(exc)

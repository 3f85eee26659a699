"""Multi-query terminal operator discovery for a port."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

from loguru import logger
from rapidfuzz import fuzz

from app import llm_client
from app.errors import ErrorCategory, ResearchAborted, ResearchError
from app.models.events import SSEEvent
from app.research_core.models.interfaces import ResearchQuery
from app.research_core.validators import validate_cargo_types, validate_coordinates, validate_operator_type
from app.services import database as db
from app.services import streaming
from app.tools.geocoding import get_geocoder
from app.tools.research_provider import execute_research_query

SIMILARITY_THRESHOLD = 0.85

_PREFIX_RE = re.compile(r"^(?:port of |port |terminal |term\.? )+")
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize_operator_name(name: str) -> str:
    text = _PREFIX_RE.sub("", name.lower().strip())
    text = _PUNCT_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def operators_similar(
    name_a: str,
    name_b: str,
    type_a: str | None = None,
    type_b: str | None = None,
) -> bool:
    """Same operator when names match after normalization or are >0.85 similar, and types agree."""
    if type_a and type_b and type_a != type_b:
        return False
    norm_a, norm_b = normalize_operator_name(name_a), normalize_operator_name(name_b)
    if norm_a == norm_b:
        return True
    return fuzz.ratio(norm_a, norm_b) / 100.0 > SIMILARITY_THRESHOLD


@dataclass(slots=True)
class DiscoveredOperator:
    name: str
    operator_type: str | None = None
    parent_companies: list[str] = field(default_factory=list)
    capacity: str | None = None
    cargo_types: list[str] = field(default_factory=list)
    latitude: float | None = None
    longitude: float | None = None
    locations: list[dict[str, Any]] = field(default_factory=list)
    source_category: str | None = None

    def absorb(self, other: DiscoveredOperator) -> None:
        """Union list fields and fill empty scalars from a duplicate record."""
        if (self.latitude is None or self.longitude is None) and other.latitude is not None and other.longitude is not None:
            self.latitude, self.longitude = other.latitude, other.longitude
        if not self.capacity and other.capacity:
            self.capacity = other.capacity
        if not self.operator_type and other.operator_type:
            self.operator_type = other.operator_type
        if not self.source_category and other.source_category:
            self.source_category = other.source_category
        self.parent_companies = list(dict.fromkeys(self.parent_companies + other.parent_companies))
        self.cargo_types = list(dict.fromkeys(self.cargo_types + other.cargo_types))
        self.locations = self.locations + [loc for loc in other.locations if loc not in self.locations]

    def to_proposal(self, port_id: str) -> dict[str, Any]:
        return {
            "portId": port_id,
            "name": self.name,
            "operatorType": self.operator_type,
            "parentCompanies": self.parent_companies or None,
            "capacity": self.capacity,
            "cargoTypes": self.cargo_types or None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "locations": self.locations or None,
        }


def merge_operators(records: list[DiscoveredOperator]) -> list[DiscoveredOperator]:
    merged: list[DiscoveredOperator] = []
    for record in records:
        target = next(
            (m for m in merged if operators_similar(record.name, m.name, record.operator_type, m.operator_type)),
            None,
        )
        if target is None:
            merged.append(record)
        else:
            target.absorb(record)
    return merged


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _locations(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    result = []
    for loc in raw:
        if not isinstance(loc, dict):
            continue
        result.append(
            {
                "name": str(loc.get("name") or ""),
                "latitude": _number(loc.get("latitude")),
                "longitude": _number(loc.get("longitude")),
            }
        )
    return result


def parse_operator(raw: Any) -> DiscoveredOperator | None:
    """Build a record from one extracted entry; entries without a name are dropped."""
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    type_check = validate_operator_type(raw.get("operator_type"))
    cargo_check = validate_cargo_types(raw.get("cargo_types"))
    parents = raw.get("parent_companies")
    capacity = raw.get("capacity")

    lat, lon = _number(raw.get("latitude")), _number(raw.get("longitude"))
    if lat is not None and lon is not None and not validate_coordinates(lat, lon).is_valid:
        lat = lon = None

    return DiscoveredOperator(
        name=name.strip(),
        operator_type=type_check.corrected_value if type_check.is_valid else None,
        parent_companies=[p.strip() for p in parents if isinstance(p, str) and p.strip()]
        if isinstance(parents, list)
        else [],
        capacity=capacity.strip() if isinstance(capacity, str) and capacity.strip() else None,
        cargo_types=list(cargo_check.corrected_value or []) if cargo_check.is_valid else [],
        latitude=lat,
        longitude=lon,
        locations=_locations(raw.get("locations")),
        source_category=raw.get("source_category") if isinstance(raw.get("source_category"), str) else None,
    )


def discovery_queries(port_name: str, country: str) -> list[ResearchQuery]:
    return [
        ResearchQuery(
            name="commercial_operators",
            title="COMMERCIAL_OPERATORS",
            model="sonar",
            prompt=f"""Find all commercial terminal operators active in {port_name}, {country}. For each operator, identify:
- Exact operator name (e.g., "PSA Singapore", "DP World Rotterdam", "APM Terminals")
- Parent company or international network (e.g., "PSA International", "DP World", "Maersk")
- Terminal locations operated by this operator (terminal names, latitude/longitude coordinates if available)
- Cargo types handled (container, dry bulk, liquid bulk, roro, multipurpose, etc.)
- Capacity information (TEU, tonnage, etc.) if available
- Whether operator has multiple terminal locations at this port

Focus on major commercial terminal operators like PSA, DP World, APM Terminals, MSC, COSCO, Hutchison Ports, and other international terminal operators.""",
            system_prompt=(
                "You are a maritime and port research assistant. Always cite your sources. Focus on identifying "
                "terminal operators (companies that operate terminals), not just individual terminals. Provide "
                "accurate operator names, parent companies, and locations."
            ),
        ),
        ResearchQuery(
            name="captive_operators",
            title="CAPTIVE_OPERATORS",
            model="sonar",
            prompt=f"""Find all companies with captive terminals (terminals operated by companies for their own cargo) in {port_name}, {country}. For each company, identify:
- Company name operating the captive terminal (e.g., "BASF", "Arcelor Mittal", "Shell", "ExxonMobil")
- Terminal name(s) or facility name(s) operated by this company
- Terminal locations (latitude/longitude coordinates if available)
- Cargo types handled (typically related to the company's business: chemicals, steel, oil, etc.)
- Capacity information if available
- Whether the company has multiple terminal locations at this port

Focus on major industrial companies that operate their own terminals for handling their cargo, such as chemical companies, steel manufacturers, oil companies, and other industrial operators.""",
            system_prompt=(
                "You are a maritime and port research assistant. Always cite your sources. Focus on identifying "
                "companies that operate terminals for their own cargo (captive terminals), not commercial "
                "third-party operators. Provide accurate company names and terminal locations."
            ),
        ),
        ResearchQuery(
            name="port_authority",
            title="PORT_AUTHORITY",
            model="sonar-pro",
            prompt=f"""Search the official port authority website or terminal directory for {port_name}, {country}. Find:
- Complete list of all terminal operators (both commercial and captive/industrial)
- Official operator names and any parent company relationships
- Terminal locations and facilities operated by each operator
- Cargo types and capacity information
- Any official terminal operator directory or concession information

Prioritize official port authority sources, terminal operator websites, and official port directories.""",
            system_prompt=(
                "You are a maritime and port research assistant. Always cite your sources with URLs when "
                "available. Prioritize official port authority sources and terminal operator websites. Focus on "
                "identifying terminal operators (companies), not just listing terminal names."
            ),
        ),
    ]


def _extraction_prompt(research: str, port_name: str, country: str) -> str:
    return f"""
Extract terminal operator information from the research findings below. Return ONLY the terminal operators found, use null if not found.

RESEARCH FINDINGS:
{research}

PORT: {port_name}, {country}

Return JSON:
{{
  "operators": [
    {{
      "name": "string (REQUIRED - exact operator name)",
      "operator_type": "commercial | captive",
      "parent_companies": ["string"] | null,
      "capacity": "string | null",
      "cargo_types": ["Container", "RoRo", "Dry Bulk", "Liquid Bulk", "Break Bulk", "Multipurpose", "Passenger/Ferry"],
      "latitude": "number | null (main terminal location)",
      "longitude": "number | null (main terminal location)",
      "locations": [{{"name": "string", "latitude": "number | null", "longitude": "number | null"}}] | null,
      "source_category": "commercial_operators | captive_operators | port_authority"
    }}
  ]
}}

CRITICAL INSTRUCTIONS:
- Extract ALL terminal operators mentioned in the research (both commercial and captive)
- "commercial" = third-party terminal operators; "captive" = companies operating terminals for their own cargo
- For joint ventures use the JV name as the operator name and list parent companies
- Group multiple terminals of one operator under a single record with several locations
- If no operators are found, return {{"operators": []}}
"""


class OperatorDiscovery:
    """Find candidate operators for a port and stage them as pending proposals."""

    def __init__(self, port: dict[str, Any], *, cancel_event: asyncio.Event | None = None):
        self.port = port
        self.port_id = str(port["id"])
        self.cancel_event = cancel_event

    async def _run_query(self, query: ResearchQuery) -> str:
        result = await execute_research_query(
            query.prompt,
            f"operator_discovery_{query.name}",
            cancel_event=self.cancel_event,
            system_prompt=query.system_prompt,
            model=query.model,
        )
        return result.content

    async def _existing(self) -> list[tuple[str, str | None]]:
        proposals = await db.list_proposals_for_port(self.port_id, ("pending", "approved"))
        operators = await db.list_operators(self.port_id)
        return [(p["name"], p.get("operatorType")) for p in proposals] + [
            (o["name"], o.get("operatorType")) for o in operators
        ]

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        port_name, country = self.port["name"], self.port.get("country") or ""
        try:
            yield streaming.status("Initializing terminal operator discovery...", "init", 0)
            queries = discovery_queries(port_name, country)
            yield streaming.status(
                "Discovering terminal operators across multiple categories...", "discovery", 10
            )

            results = await asyncio.gather(*(self._run_query(q) for q in queries), return_exceptions=True)
            succeeded: list[tuple[ResearchQuery, str]] = []
            failed: list[str] = []
            for query, result in zip(queries, results):
                if isinstance(result, ResearchAborted) or not isinstance(result, (str, Exception)):
                    raise result
                if isinstance(result, Exception):
                    logger.warning(f"[Discovery] {port_name} - {query.name} query failed: {result}")
                    failed.append(query.name)
                else:
                    succeeded.append((query, result))

            if failed:
                yield streaming.status(
                    f"Warning: {len(failed)} query(s) failed, continuing with {len(succeeded)} successful query(s)...",
                    "discovery",
                    50,
                    failedCategories=failed,
                )
            if not succeeded:
                raise ResearchError(
                    ErrorCategory.API_ERROR,
                    "All operator discovery queries failed",
                    retryable=True,
                )

            research = "\n\n".join(f"=== {q.title} ===\n{content}" for q, content in succeeded)
            yield streaming.status("Extracting operator information...", "extract", 70)
            raw = await llm_client.complete_json(
                _extraction_prompt(research, port_name, country),
                caller="operator_discovery",
                temperature=0.1,
            )
            entries = raw.get("operators")
            if not isinstance(entries, list):
                raise ResearchError(
                    ErrorCategory.VALIDATION_ERROR,
                    "Received unexpected data format. Please try again.",
                    original_error="Operators array not found in response",
                )

            merged = merge_operators([op for op in (parse_operator(e) for e in entries) if op is not None])
            by_type = {"commercial": 0, "captive": 0, "unknown": 0}
            for op in merged:
                by_type[op.operator_type if op.operator_type in by_type else "unknown"] += 1
            yield streaming.status(
                f"Found {len(merged)} unique operator(s) across {len(succeeded)} categories",
                "merge",
                75,
                operatorsByType=by_type,
            )

            yield streaming.status("Checking for duplicates...", "deduplicate", 80)
            existing = await self._existing()
            fresh: list[DiscoveredOperator] = []
            skipped: list[str] = []
            for op in merged:
                if any(operators_similar(op.name, name, op.operator_type, kind) for name, kind in existing):
                    skipped.append(op.name)
                    continue
                fresh.append(op)
            yield streaming.status(
                f"Filtered {len(skipped)} duplicate(s), {len(fresh)} new operator(s) found", "deduplicate", 85
            )

            yield streaming.status("Geocoding operators without coordinates...", "geocode", 87)
            geocoder = get_geocoder()
            for op in fresh:
                if op.latitude is not None and op.longitude is not None:
                    continue
                located = await geocoder.geocode_operator(op.name, port_name, country)
                if located is not None:
                    op.latitude, op.longitude = located.latitude, located.longitude

            yield streaming.status(f"Creating {len(fresh)} operator proposal(s)...", "create", 90)
            created: list[dict[str, Any]] = []
            for op in fresh:
                try:
                    row = await db.create_proposal(op.to_proposal(self.port_id))
                except Exception as exc:
                    logger.error(f"[Discovery] failed to create proposal for {op.name}: {exc}")
                    continue
                created.append(
                    {
                        "id": row["id"],
                        "name": row["name"],
                        "operatorType": row.get("operatorType"),
                        "latitude": row.get("latitude"),
                        "longitude": row.get("longitude"),
                        "status": row.get("status", "pending"),
                    }
                )

            yield streaming.status(
                f"Terminal operator discovery complete. Found {len(created)} new operator(s).", "complete", 100
            )
            yield streaming.preview(
                {
                    "proposals": created,
                    "total_found": len(merged),
                    "duplicates_skipped": len(skipped),
                    "new_proposals": len(created),
                    "operators_by_type": by_type,
                    "queries_succeeded": len(succeeded),
                    "queries_failed": len(failed),
                    "failed_categories": failed,
                }
            )
            yield streaming.complete("Operator discovery complete", proposals=len(created))
        except Exception as exc:
            logger.error(f"[Discovery] {port_name} - discovery failed: {exc!r}")
            yield streaming.error_from_exception(exc)

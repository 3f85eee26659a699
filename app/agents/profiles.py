"""Entity profiles for deep research.

A profile tells ``DeepResearchOrchestrator`` which queries to run for one kind of
entity, which fields to extract and how to validate them, and what the progress
milestones are. Ports and terminal operators share the rest of the pipeline.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from app.research_core import validators
from app.research_core.models.interfaces import ResearchQuery
from app.research_core.validators import ValidationResult
from app.services import database as db
from app.tools.geocoding import Coordinates, get_geocoder
from app.tools.research_provider import get_optimal_model

Validator = Callable[[Any], ValidationResult]


@dataclass(frozen=True, slots=True)
class FieldSpec:
    key: str
    extract_key: str
    label: str
    query_name: str
    validator: Validator | None = None
    aliases: tuple[str, ...] = ()


def _coordinates_of(entity: dict[str, Any]) -> dict[str, float] | None:
    lat, lon = entity.get("latitude"), entity.get("longitude")
    if lat is None or lon is None:
        return None
    return {"lat": lat, "lon": lon}


def _or_unknown(value: Any) -> str:
    if value is None or value == "" or value == []:
        return "unknown"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


class PortProfile:
    kind = "port"
    job_type = "port"
    noun = "port"
    extract_soft_limit = 6000
    geocodes = True

    progress = {
        "init": 0,
        "parallel_queries": 20,
        "retry_queries": 65,
        "queries_complete": 70,
        "geocode": 75,
        "geocode_done": 80,
        "extract": 85,
        "confidence": 94,
        "validate": 94.5,
        "conflict_detection": 94.7,
        "llm_analysis": 95,
        "notes": 98,
        "prepare": 99,
        "complete": 100,
    }

    fields = (
        FieldSpec("portAuthority", "port_authority", "Port Authority", "governance",
                  validators.validate_port_authority, ("authority",)),
        FieldSpec("identityCompetitors", "identity_competitors", "Competitors", "strategic_intelligence",
                  validators.validate_identity_competitors, ("competitor",)),
        FieldSpec("identityAdoptionRate", "identity_adoption_rate", "Adoption Rate", "strategic_intelligence",
                  validators.validate_identity_adoption_rate, ("adoption",)),
        FieldSpec("portLevelISPSRisk", "port_level_isps_risk", "ISPS Risk Level", "isps_risk",
                  validators.validate_isps_level, ("risk",)),
        FieldSpec("ispsEnforcementStrength", "isps_enforcement_strength", "Enforcement Strength", "isps_risk",
                  validators.validate_enforcement_strength, ("enforcement",)),
    )

    def __init__(self, entity: dict[str, Any]):
        self.entity = entity

    @property
    def name(self) -> str:
        return self.entity["name"]

    def queries(self) -> list[ResearchQuery]:
        name, country = self.entity["name"], self.entity.get("country") or "unknown country"
        cluster = self.entity.get("clusterName") or "unassigned"
        return [
            ResearchQuery(
                name="governance",
                title="## Governance Report",
                prompt=(
                    f"Research the port authority and governance structure for {name} in {country}. "
                    "Focus on: port authority name, governance model, decision-making processes. Cite sources."
                ),
                model=get_optimal_model("governance"),
            ),
            ResearchQuery(
                name="isps_risk",
                title="## ISPS Risk & Enforcement Report",
                prompt=(
                    f"Assess ISPS security risk level and enforcement strength at {name}. "
                    "Include: risk level (Low/Medium/High/Very High), enforcement strength "
                    "(Weak/Moderate/Strong/Very Strong), security incidents. Cite sources."
                ),
                model=get_optimal_model("isps_risk"),
            ),
            ResearchQuery(
                name="strategic_intelligence",
                title="## Strategic Intelligence Report",
                prompt=(
                    f"Analyze network effects and cluster dynamics for {name} in the {cluster} cluster. "
                    "Include: coordination with other ports, expansion opportunities, competitive "
                    "positioning. Cite sources."
                ),
                model=get_optimal_model("strategic_intelligence"),
            ),
        ]

    def current_values(self) -> dict[str, Any]:
        values = {spec.key: self.entity.get(spec.key) for spec in self.fields}
        values["coordinates"] = _coordinates_of(self.entity)
        return values

    def describe(self) -> str:
        e = self.entity
        return "\n".join(
            [
                "CURRENT PORT DATA:",
                f"- Name: {e['name']}",
                f"- Country: {_or_unknown(e.get('country'))}",
                f"- Cluster: {_or_unknown(e.get('clusterName'))}",
                f"- Port Authority: {_or_unknown(e.get('portAuthority'))}",
                f"- ISPS Risk: {_or_unknown(e.get('portLevelISPSRisk'))}",
                f"- Enforcement: {_or_unknown(e.get('ispsEnforcementStrength'))}",
            ]
        )

    def extraction_schema(self) -> str:
        return """{
  "port_authority": {"value": "string | null", "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"},
  "identity_competitors": {"value": ["string"] | null, "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"},
  "identity_adoption_rate": {"value": "string | null", "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"},
  "port_level_isps_risk": {"value": "Low | Medium | High | Very High | null", "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"},
  "isps_enforcement_strength": {"value": "Weak | Moderate | Strong | Very Strong | null", "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"}
}"""

    def extraction_notes(self) -> str:
        return ""

    async def locate(self) -> Coordinates | None:
        return await get_geocoder().geocode_port(self.entity["name"], self.entity.get("country") or "")

    async def port_change(self, suggested: Any, data_to_update: dict[str, Any]) -> dict[str, Any] | None:
        return None


class OperatorProfile:
    kind = "operator"
    job_type = "terminal"
    noun = "terminal operator"
    extract_soft_limit = 8000
    geocodes = False

    progress = {
        "init": 0,
        "parallel_queries": 20,
        "retry_queries": 65,
        "queries_complete": 70,
        "extract": 85,
        "confidence": 92,
        "validate": 92.5,
        "conflict_detection": 92.7,
        "llm_analysis": 95,
        "notes": 98,
        "prepare": 99,
        "complete": 100,
    }

    fields = (
        FieldSpec("operatorType", "operator_type", "Operator Type", "capacity_operations",
                  validators.validate_operator_type, ("operator",)),
        FieldSpec("parentCompanies", "parent_companies", "Parent Companies", "capacity_operations",
                  validators.validate_parent_companies, ("parent", "compan")),
        FieldSpec("capacity", "capacity", "Capacity", "capacity_operations", validators.validate_capacity),
        FieldSpec("cargoTypes", "cargo_types", "Cargo Types", "capacity_operations",
                  validators.validate_cargo_types, ("cargo",)),
        FieldSpec("coordinates", "new_coordinates", "Coordinates", "identity_location",
                  validators.validate_coordinates, ("coord", "location")),
        FieldSpec("portId", "suggested_port_name", "Port", "identity_location", None, ("port",)),
    )

    def __init__(self, entity: dict[str, Any]):
        self.entity = entity

    @property
    def name(self) -> str:
        return self.entity["name"]

    def queries(self) -> list[ResearchQuery]:
        op = self.entity["name"]
        port = self.entity.get("portName") or "unknown port"
        country = self.entity.get("portCountry") or "unknown country"
        return [
            ResearchQuery(
                name="identity_location",
                title="## Location Report",
                prompt=(
                    f"Find the exact location (latitude, longitude) of {op} in {port}, {country}. "
                    f"Confirm if {op} is located in {port} or a different port. Include all terminal "
                    "locations operated by this operator. Cite sources."
                ),
                model=get_optimal_model("identity_location"),
            ),
            ResearchQuery(
                name="capacity_operations",
                title="## Capacity & Operations Report",
                prompt=(
                    "Research the annual capacity (TEU or tonnage), cargo types, operator type "
                    f"(commercial or captive), and parent companies for {op}. Include specific cargo "
                    "categories and any international network affiliations. Cite sources."
                ),
                model=get_optimal_model("capacity_operations"),
            ),
        ]

    def current_values(self) -> dict[str, Any]:
        e = self.entity
        return {
            "operatorType": e.get("operatorType"),
            "parentCompanies": e.get("parentCompanies"),
            "capacity": e.get("capacity"),
            "cargoTypes": e.get("cargoTypes"),
            "coordinates": _coordinates_of(e),
            "portId": e.get("portName"),
        }

    def describe(self) -> str:
        e = self.entity
        parents = e.get("parentCompanies")
        return "\n".join(
            [
                "CURRENT OPERATOR DATA:",
                f"- Name: {e['name']}",
                f"- Port: {_or_unknown(e.get('portName'))} ({_or_unknown(e.get('portCountry'))})",
                f"- Operator Type: {_or_unknown(e.get('operatorType'))}",
                f"- Parent Companies: {', '.join(parents) if isinstance(parents, list) and parents else 'none'}",
                f"- Capacity: {_or_unknown(e.get('capacity'))}",
                f"- Cargo Types: {json.dumps(e.get('cargoTypes') or [])}",
                f"- Coordinates: {e.get('latitude')}, {e.get('longitude')}",
            ]
        )

    def extraction_schema(self) -> str:
        return """{
  "operator_type": {"value": "commercial | captive | null", "confidence": 0.0-1.0, "sources": [0, 1], "quality": "explicit | inferred | partial"},
  "parent_companies": {"value": ["string"] | null, "confidence": 0.0-1.0, "sources": [1], "quality": "explicit | inferred | partial"},
  "cargo_types": {"value": ["Container", "RoRo", "Dry Bulk", "Liquid Bulk", "Break Bulk", "Multipurpose", "Passenger/Ferry"] | null, "confidence": 0.0-1.0, "sources": [1], "quality": "explicit | inferred | partial"},
  "capacity": {"value": "string | null", "confidence": 0.0-1.0, "sources": [1], "quality": "explicit | inferred | partial"},
  "suggested_port_name": {"value": "string | null", "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"},
  "new_coordinates": {"value": {"lat": number, "lon": number} | null, "confidence": 0.0-1.0, "sources": [0], "quality": "explicit | inferred | partial"}
}"""

    def extraction_notes(self) -> str:
        return (
            "- For cargo_types, use only valid values: "
            + ", ".join(validators.CARGO_TYPES)
        )

    async def locate(self) -> Coordinates | None:
        return None

    async def port_change(self, suggested: Any, data_to_update: dict[str, Any]) -> dict[str, Any] | None:
        """Resolve a suggested port name that differs from the operator's current port."""
        if not isinstance(suggested, str) or not suggested.strip():
            return None
        current = self.entity.get("portName") or ""
        if suggested.strip().lower() == current.strip().lower():
            return None

        match = await db.find_port_by_name(suggested)
        if match and match["id"] != self.entity.get("portId"):
            data_to_update["portId"] = match["id"]
        return {
            "current_port": current,
            "suggested_port": match["name"] if match else suggested.strip(),
            "suggested_port_id": match["id"] if match else None,
        }


def profile_for(kind: str, entity: dict[str, Any]) -> PortProfile | OperatorProfile:
    if kind == "port":
        return PortProfile(entity)
    if kind == "operator":
        return OperatorProfile(entity)
    raise ValueError(f"Unknown entity kind: {kind}")

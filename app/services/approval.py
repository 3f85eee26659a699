"""Proposal materialization and field-level apply."""
from __future__ import annotations

from typing import Any

from loguru import logger

from app.research_core.validators import validate_coordinates
from app.services import database as db
from app.tools.geocoding import Geocoder, get_geocoder

DEFAULT_COORDINATES = (50.0, 10.0)

SOURCE_PROPOSAL = "from proposal"
SOURCE_GEOCODED = "geocoded from operator name"
SOURCE_SIBLINGS = "calculated from port average"
SOURCE_FALLBACK = "from port/default location"

ALWAYS_APPLIED = ("lastDeepResearchAt", "lastDeepResearchSummary")


def _valid_pair(lat: Any, lon: Any) -> tuple[float, float] | None:
    if lat is None or lon is None:
        return None
    check = validate_coordinates(lat, lon)
    if not check.is_valid or not check.corrected_value:
        return None
    return check.corrected_value["lat"], check.corrected_value["lon"]


async def resolve_coordinates(
    proposal: dict[str, Any],
    port: dict[str, Any],
    siblings: list[dict[str, Any]],
    geocoder: Geocoder | None = None,
) -> tuple[float, float, str]:
    """Pick coordinates for a new operator; the first strategy that yields a point wins.

    Order: the proposal's own point, geocoding, the mean of sibling operators,
    then the port's point or a fixed default.
    """
    own = _valid_pair(proposal.get("latitude"), proposal.get("longitude"))
    if own:
        return own[0], own[1], SOURCE_PROPOSAL

    try:
        located = await (geocoder or get_geocoder()).geocode_operator(
            proposal["name"], port.get("name") or "", port.get("country") or "", proposal.get("address")
        )
    except Exception as exc:
        logger.warning(f"Geocoding failed for proposal {proposal.get('id')}: {exc}")
        located = None
    if located is not None:
        return located.latitude, located.longitude, SOURCE_GEOCODED

    points = [p for p in (_valid_pair(s.get("latitude"), s.get("longitude")) for s in siblings) if p]
    if points:
        lat = sum(p[0] for p in points) / len(points)
        lon = sum(p[1] for p in points) / len(points)
        return round(lat, 6), round(lon, 6), SOURCE_SIBLINGS

    port_point = _valid_pair(port.get("latitude"), port.get("longitude"))
    lat, lon = port_point or DEFAULT_COORDINATES
    return lat, lon, SOURCE_FALLBACK


async def materialize_proposal(
    proposal: dict[str, Any],
    port: dict[str, Any],
    geocoder: Geocoder | None = None,
) -> dict[str, Any]:
    siblings = await db.list_operators(proposal["portId"])
    lat, lon, source = await resolve_coordinates(proposal, port, siblings, geocoder)
    return await db.create_operator(
        {
            "name": proposal["name"],
            "portId": proposal["portId"],
            "operatorType": proposal.get("operatorType") or "commercial",
            "parentCompanies": proposal.get("parentCompanies"),
            "capacity": proposal.get("capacity"),
            "cargoTypes": proposal.get("cargoTypes") or [],
            "latitude": lat,
            "longitude": lon,
            "locations": proposal.get("locations"),
            "strategicNotes": f"Created from operator proposal. Coordinates {source}.",
        }
    )


async def approve_proposals(
    proposals: list[dict[str, Any]],
    geocoder: Geocoder | None = None,
) -> list[dict[str, Any]]:
    """Materialize each proposal; one failure never stops the rest."""
    ports: dict[str, dict[str, Any] | None] = {}
    created: list[dict[str, Any]] = []
    for proposal in proposals:
        port_id = proposal["portId"]
        try:
            if port_id not in ports:
                ports[port_id] = await db.get_port(port_id)
            port = ports[port_id]
            if port is None:
                logger.error(f"Proposal {proposal['id']} references missing port {port_id}")
                continue
            operator = await materialize_proposal(proposal, port, geocoder)
        except Exception as exc:
            logger.error(f"Failed to create operator from proposal {proposal.get('id')}: {exc}")
            continue
        created.append({"id": operator["id"], "name": operator["name"], "proposalId": proposal["id"]})
    return created


def select_fields(
    data_to_update: dict[str, Any],
    approved_fields: list[str] | None,
    columns: dict[str, str],
) -> dict[str, Any]:
    """Pick the keys of a research payload that should be written to the entity.

    With an allow-list only those keys are copied (``coordinates`` stands for
    latitude/longitude). Without one, every non-null column key is applied.
    """
    if approved_fields is None:
        return {k: v for k, v in data_to_update.items() if k in columns and v is not None}

    allowed = set(approved_fields)
    if "coordinates" in allowed:
        allowed.update(("latitude", "longitude"))
    allowed.update(ALWAYS_APPLIED)
    return {k: v for k, v in data_to_update.items() if k in allowed and k in columns}

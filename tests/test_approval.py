"""Tests for proposal approval and field-level apply."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services import database as db
from app.services.approval import (
    DEFAULT_COORDINATES,
    approve_proposals,
    resolve_coordinates,
    select_fields,
)
from app.tools.geocoding import Coordinates

PORT = {"id": "port-1", "name": "Rotterdam", "country": "Netherlands", "latitude": 51.9, "longitude": 4.4}


def geocoder_returning(value):
    geocoder = MagicMock()
    geocoder.geocode_operator = AsyncMock(return_value=value)
    return geocoder


class TestCoordinateChain:
    @pytest.mark.asyncio
    async def test_proposal_coordinates_win(self):
        geocoder = geocoder_returning(Coordinates(1, 1))
        result = await resolve_coordinates({"name": "ECT", "latitude": 51.95, "longitude": 4.05}, PORT, [], geocoder)
        assert result == (51.95, 4.05, "from proposal")
        geocoder.geocode_operator.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_geocoding_uses_address(self):
        geocoder = geocoder_returning(Coordinates(51.88, 4.36))
        proposal = {"name": "Shell Pernis", "address": "Vondelingenweg 601"}
        result = await resolve_coordinates(proposal, PORT, [], geocoder)
        assert result == (51.88, 4.36, "geocoded from operator name")
        geocoder.geocode_operator.assert_awaited_once_with(
            "Shell Pernis", "Rotterdam", "Netherlands", "Vondelingenweg 601"
        )

    @pytest.mark.asyncio
    async def test_sibling_mean(self):
        siblings = [{"latitude": 50.0, "longitude": 4.0}, {"latitude": 52.0, "longitude": 6.0}, {"latitude": None}]
        result = await resolve_coordinates({"name": "X"}, PORT, siblings, geocoder_returning(None))
        assert result == (51.0, 5.0, "calculated from port average")

    @pytest.mark.asyncio
    async def test_port_then_default(self):
        port_point = await resolve_coordinates({"name": "X"}, PORT, [], geocoder_returning(None))
        assert port_point == (51.9, 4.4, "from port/default location")

        bare_port = dict(PORT, latitude=None, longitude=None)
        default = await resolve_coordinates({"name": "X"}, bare_port, [], geocoder_returning(None))
        assert default == (*DEFAULT_COORDINATES, "from port/default location")

    @pytest.mark.asyncio
    async def test_geocoder_exception_falls_through(self):
        geocoder = MagicMock()
        geocoder.geocode_operator = AsyncMock(side_effect=RuntimeError("boom"))
        result = await resolve_coordinates({"name": "X"}, PORT, [], geocoder)
        assert result[2] == "from port/default location"


@pytest.mark.asyncio
async def test_approve_creates_operators_and_skips_failures():
    proposals = [
        {"id": "prop-1", "portId": "port-1", "name": "ECT Delta", "latitude": 51.95, "longitude": 4.05,
         "cargoTypes": ["Container"]},
        {"id": "prop-2", "portId": "port-1", "name": "Broken"},
        {"id": "prop-3", "portId": "port-9", "name": "Orphan"},
    ]

    async def create_operator(data):
        if data["name"] == "Broken":
            raise RuntimeError("insert failed")
        return {"id": f"op-{data['name']}", **data}

    async def get_port(port_id):
        return PORT if port_id == "port-1" else None

    with patch.object(db, "get_port", new=AsyncMock(side_effect=get_port)) as get_port_mock, \
            patch.object(db, "list_operators", new=AsyncMock(return_value=[])), \
            patch.object(db, "create_operator", new=AsyncMock(side_effect=create_operator)) as create:
        created = await approve_proposals(proposals, geocoder_returning(None))

    assert created == [{"id": "op-ECT Delta", "name": "ECT Delta", "proposalId": "prop-1"}]
    assert get_port_mock.await_count == 2

    first = create.await_args_list[0].args[0]
    assert first["operatorType"] == "commercial"
    assert first["strategicNotes"] == "Created from operator proposal. Coordinates from proposal."
    broken = create.await_args_list[1].args[0]
    assert broken["cargoTypes"] == []
    assert broken["strategicNotes"].endswith("Coordinates from port/default location.")


class TestSelectFields:
    def test_allow_list_with_coordinates(self):
        data = {
            "capacity": "8 million TEU",
            "operatorType": "captive",
            "latitude": 51.9,
            "longitude": 4.4,
            "lastDeepResearchAt": "2026-01-01T00:00:00+00:00",
            "lastDeepResearchSummary": "Summary",
            "unknownColumn": 1,
        }
        selected = select_fields(data, ["capacity", "coordinates", "unknownColumn"], db.OPERATOR_COLUMNS)
        assert selected == {
            "capacity": "8 million TEU",
            "latitude": 51.9,
            "longitude": 4.4,
            "lastDeepResearchAt": "2026-01-01T00:00:00+00:00",
            "lastDeepResearchSummary": "Summary",
        }

    def test_legacy_mode_applies_non_null_columns(self):
        data = {"portAuthority": "Port of Rotterdam Authority", "portLevelISPSRisk": None, "bogus": "x"}
        assert select_fields(data, None, db.PORT_COLUMNS) == {"portAuthority": "Port of Rotterdam Authority"}

    def test_empty_allow_list_keeps_bookkeeping_only(self):
        data = {"capacity": "1 TEU", "lastDeepResearchSummary": "s"}
        assert select_fields(data, [], db.OPERATOR_COLUMNS) == {"lastDeepResearchSummary": "s"}

"""Tests for operator discovery."""
from __future__ import annotations

from contextlib import ExitStack
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.agents.discovery import (
    DiscoveredOperator,
    OperatorDiscovery,
    merge_operators,
    normalize_operator_name,
    operators_similar,
    parse_operator,
)
from app.errors import ErrorCategory, ResearchError
from app.tools.geocoding import Coordinates
from app.tools.research_provider import ResearchResult

PORT = {"id": "port-1", "name": "Rotterdam", "country": "Netherlands"}

EXTRACTED = {
    "operators": [
        {"name": "ECT Delta", "operator_type": "commercial", "cargo_types": ["containers"], "latitude": 51.95, "longitude": 4.05},
        {"name": "ECT Delta.", "operator_type": "commercial", "parent_companies": ["Hutchison Ports"]},
        {"name": "Shell Pernis", "operator_type": "captive", "cargo_types": ["liquid bulk"]},
        {"name": "APM Terminals Maasvlakte II", "operator_type": "commercial"},
        {"operator_type": "commercial"},
    ]
}


class TestNameMatching:
    def test_normalisation_strips_prefixes_and_punctuation(self):
        assert normalize_operator_name("Port of Rotterdam Authority") == "rotterdam authority"
        assert normalize_operator_name("  Terminal  Euromax (Rotterdam) ") == "euromax rotterdam"

    def test_similar_names_match(self):
        assert operators_similar("APM Terminals Maasvlakte II", "APM Terminals Maasvlakte 2")
        assert not operators_similar("ECT Delta", "Rotterdam Shortsea Terminals")

    def test_conflicting_types_never_match(self):
        assert not operators_similar("DP World", "DP World", "commercial", "captive")
        assert operators_similar("DP World", "DP World", "commercial", None)

    def test_merge_unions_lists_and_fills_scalars(self):
        merged = merge_operators(
            [
                DiscoveredOperator("ECT Delta", "commercial", parent_companies=["Hutchison Ports"]),
                DiscoveredOperator("ect delta", None, parent_companies=["Hutchison Ports", "CK Hutchison"],
                                   capacity="8 million TEU", latitude=1.0, longitude=2.0),
            ]
        )
        assert len(merged) == 1
        assert merged[0].parent_companies == ["Hutchison Ports", "CK Hutchison"]
        assert merged[0].capacity == "8 million TEU"
        assert (merged[0].latitude, merged[0].longitude) == (1.0, 2.0)

    def test_parse_operator_validates_fields(self):
        record = parse_operator(
            {"name": " Vopak ", "operator_type": "weird", "cargo_types": ["oil products", "Liquid Bulk"],
             "latitude": 200, "longitude": 4}
        )
        assert record.name == "Vopak"
        assert record.operator_type is None
        assert record.cargo_types == ["Liquid Bulk"]
        assert record.latitude is None
        assert parse_operator({"name": ""}) is None


@pytest.fixture
def patched():
    geocoder = MagicMock()
    geocoder.geocode_operator = AsyncMock(return_value=Coordinates(51.88, 4.36))

    async def create_proposal(data):
        return {"id": f"prop-{data['name']}", "status": "pending", **data}

    with ExitStack() as stack:
        mocks = {
            "query": stack.enter_context(
                patch(
                    "app.agents.discovery.execute_research_query",
                    new=AsyncMock(return_value=ResearchResult("Operators at Rotterdam [1]", ["Source 1"])),
                )
            ),
            "json": stack.enter_context(patch("app.llm_client.complete_json", new=AsyncMock(return_value=EXTRACTED))),
            "proposals": stack.enter_context(
                patch("app.services.database.list_proposals_for_port", new=AsyncMock(return_value=[]))
            ),
            "operators": stack.enter_context(
                patch(
                    "app.services.database.list_operators",
                    new=AsyncMock(return_value=[{"name": "APM Terminals Maasvlakte 2", "operatorType": "commercial"}]),
                )
            ),
            "create": stack.enter_context(
                patch("app.services.database.create_proposal", new=AsyncMock(side_effect=create_proposal))
            ),
            "geocoder": geocoder,
        }
        stack.enter_context(patch("app.agents.discovery.get_geocoder", return_value=geocoder))
        yield mocks


async def collect(discovery: OperatorDiscovery) -> list:
    return [event async for event in discovery.run()]


@pytest.mark.asyncio
async def test_discovery_merges_dedupes_and_creates(patched):
    events = await collect(OperatorDiscovery(PORT))

    assert [e.event.value for e in events[-2:]] == ["preview", "complete"]
    progress = [e.data["progress"] for e in events if e.event.value == "status"]
    assert progress == sorted(progress)
    assert progress[-1] == 100

    preview = events[-2].data
    assert preview["total_found"] == 3
    assert preview["duplicates_skipped"] == 1
    assert preview["new_proposals"] == 2
    assert preview["operators_by_type"] == {"commercial": 2, "captive": 1, "unknown": 0}
    assert preview["queries_succeeded"] == 3
    assert preview["failed_categories"] == []

    created = [c.args[0] for c in patched["create"].await_args_list]
    ect = next(p for p in created if p["name"] == "ECT Delta")
    assert ect["parentCompanies"] == ["Hutchison Ports"]
    assert ect["cargoTypes"] == ["Container"]
    assert ect["portId"] == "port-1"

    shell = next(p for p in created if p["name"] == "Shell Pernis")
    assert (shell["latitude"], shell["longitude"]) == (51.88, 4.36)
    patched["geocoder"].geocode_operator.assert_awaited_once_with("Shell Pernis", "Rotterdam", "Netherlands")


@pytest.mark.asyncio
async def test_partial_query_failure_is_reported(patched):
    async def some_fail(prompt, name, **kwargs):
        if name == "captive_operators":
            raise ResearchError(ErrorCategory.NETWORK_ERROR, "reset", retryable=True)
        return ResearchResult("Operators", [])

    patched["query"].side_effect = some_fail
    events = await collect(OperatorDiscovery(PORT))

    warning = next(e for e in events if e.event.value == "status" and e.data["progress"] == 50)
    assert warning.data["failedCategories"] == ["captive_operators"]
    preview = next(e for e in events if e.event.value == "preview").data
    assert preview["queries_failed"] == 1
    assert preview["failed_categories"] == ["captive_operators"]


@pytest.mark.asyncio
async def test_all_queries_failing_is_an_error(patched):
    patched["query"].side_effect = ResearchError(ErrorCategory.NETWORK_ERROR, "down", retryable=True)
    events = await collect(OperatorDiscovery(PORT))

    assert events[-1].event.value == "error"
    assert events[-1].data["category"] == "API_ERROR"
    patched["create"].assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_extraction_is_validation_error(patched):
    patched["json"].return_value = {"result": "nothing"}
    events = await collect(OperatorDiscovery(PORT))
    assert events[-1].data["category"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_proposal_insert_failure_skips_record(patched):
    async def flaky_create(data):
        if data["name"] == "Shell Pernis":
            raise RuntimeError("constraint violation")
        return {"id": "prop-1", "status": "pending", **data}

    patched["create"].side_effect = flaky_create
    events = await collect(OperatorDiscovery(PORT))
    preview = next(e for e in events if e.event.value == "preview").data
    assert [p["name"] for p in preview["proposals"]] == ["ECT Delta"]

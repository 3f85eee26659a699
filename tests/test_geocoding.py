"""Tests for the Nominatim geocoder."""
from __future__ import annotations

import httpx
import pytest

from app.tools.geocoding import Geocoder


def _geocoder(handler) -> Geocoder:
    return Geocoder(
        base_url="https://geo.test",
        user_agent="PortIntel-tests",
        transport=httpx.MockTransport(handler),
        min_interval_s=0,
    )


@pytest.mark.asyncio
async def test_port_query_shape_and_rounding():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"lat": "51.95123456789", "lon": "4.1423"}])

    located = await _geocoder(handler).geocode_port("Rotterdam", "Netherlands")

    assert located.latitude == 51.951235
    assert located.longitude == 4.1423
    assert seen[0].url.params["q"] == "Rotterdam port, Netherlands"
    assert seen[0].url.params["limit"] == "1"
    assert seen[0].headers["User-Agent"] == "PortIntel-tests"


@pytest.mark.asyncio
async def test_operator_query_prefers_address():
    queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        queries.append(request.url.params["q"])
        return httpx.Response(200, json=[{"lat": "1.0", "lon": "2.0"}])

    geocoder = _geocoder(handler)
    await geocoder.geocode_operator("ECT Delta", "Rotterdam", "Netherlands")
    await geocoder.geocode_operator("ECT Delta", "Rotterdam", "Netherlands", address="Europaweg 875")
    assert queries == ["ECT Delta, Rotterdam, Netherlands", "Europaweg 875, Rotterdam, Netherlands"]


@pytest.mark.asyncio
async def test_empty_result_is_none():
    located = await _geocoder(lambda r: httpx.Response(200, json=[])).geocode("Nowhere")
    assert located is None


@pytest.mark.asyncio
async def test_http_error_is_none():
    located = await _geocoder(lambda r: httpx.Response(500)).geocode_port("Rotterdam", "Netherlands")
    assert located is None


@pytest.mark.asyncio
async def test_out_of_range_result_is_none():
    located = await _geocoder(lambda r: httpx.Response(200, json=[{"lat": "123", "lon": "4"}])).geocode("X")
    assert located is None


@pytest.mark.asyncio
async def test_context_is_joined():
    queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        queries.append(request.url.params["q"])
        return httpx.Response(200, json=[{"lat": "1", "lon": "1"}])

    await _geocoder(handler).geocode("APM Terminals", {"port": "Algeciras", "country": "Spain"})
    assert queries == ["APM Terminals, Algeciras, Spain"]

"""Nominatim geocoding with a 1 request/second throttle.

The throttle is a last-call timestamp on the ``Geocoder`` instance. It relies on
single event-loop scheduling rather than a lock.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from app.config import settings
from app.research_core.validators import validate_coordinates

MIN_INTERVAL_S = 1.0


@dataclass(slots=True)
class Coordinates:
    latitude: float
    longitude: float

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


class Geocoder:
    def __init__(
        self,
        base_url: str | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        min_interval_s: float = MIN_INTERVAL_S,
    ):
        self.base_url = (base_url or settings.geocoder_base_url).rstrip("/")
        self.user_agent = user_agent or settings.geocoder_user_agent
        self.min_interval_s = min_interval_s
        self._transport = transport
        self._last_call = 0.0

    async def _throttle(self) -> None:
        wait = self.min_interval_s - (time.monotonic() - self._last_call)
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_call = time.monotonic()

    async def _search(self, query: str) -> Coordinates | None:
        await self._throttle()
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as http:
                response = await http.get(
                    f"{self.base_url}/search",
                    params={"format": "json", "limit": 1, "q": query},
                    headers={"User-Agent": self.user_agent},
                )
                response.raise_for_status()
                results: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Geocoding failed for '{query}': {exc!r}")
            return None

        if not isinstance(results, list) or not results:
            logger.info(f"No geocoding result for '{query}'")
            return None

        try:
            lat = float(results[0]["lat"])
            lon = float(results[0]["lon"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Malformed geocoding result for '{query}': {exc!r}")
            return None

        check = validate_coordinates(lat, lon)
        if not check.is_valid or not check.corrected_value:
            logger.warning(f"Geocoder returned invalid coordinates for '{query}': {check.errors}")
            return None
        return Coordinates(check.corrected_value["lat"], check.corrected_value["lon"])

    async def geocode(self, name: str, context: dict[str, str] | None = None) -> Coordinates | None:
        context = context or {}
        parts = [name, context.get("port", ""), context.get("country", "")]
        return await self._search(", ".join(p for p in parts if p))

    async def geocode_operator(
        self,
        name: str,
        port_name: str,
        country: str,
        address: str | None = None,
    ) -> Coordinates | None:
        lead = address.strip() if address and address.strip() else name
        return await self._search(f"{lead}, {port_name}, {country}")

    async def geocode_port(self, port_name: str, country: str) -> Coordinates | None:
        return await self._search(f"{port_name} port, {country}")


_geocoder: Geocoder | None = None


def get_geocoder() -> Geocoder:
    global _geocoder
    if _geocoder is None:
        _geocoder = Geocoder()
    return _geocoder

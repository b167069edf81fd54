from __future__ import annotations

import asyncio
import time

import httpx
from loguru import logger

from portpass.config import settings


class NominatimGeocoder:
    """OpenStreetMap Nominatim lookup, rate limited to one request per interval."""

    source_label = "OpenStreetMap"

    def __init__(
        self,
        *,
        url: str = "https://nominatim.openstreetmap.org/search",
        user_agent: str = "portpass-research/0.1",
        min_interval_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.user_agent = user_agent
        self.min_interval_seconds = min_interval_seconds
        self._transport = transport
        self._lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def _wait_for_slot(self) -> None:
        elapsed = time.monotonic() - self._last_request_at
        if elapsed < self.min_interval_seconds:
            await asyncio.sleep(self.min_interval_seconds - elapsed)
        self._last_request_at = time.monotonic()

    async def geocode(self, query: str) -> tuple[float, float] | None:
        """Return ``(lat, lon)`` for the best match, or None when nothing is found."""
        async with self._lock:
            await self._wait_for_slot()
            try:
                async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                    response = await client.get(
                        self.url,
                        params={"q": query, "format": "json", "limit": 1},
                        headers={"User-Agent": self.user_agent},
                    )
                    response.raise_for_status()
                    payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(f"Geocoding failed for '{query}': {exc}")
                return None

        if not isinstance(payload, list) or not payload:
            logger.info(f"Geocoding found no match for '{query}'")
            return None
        try:
            return float(payload[0]["lat"]), float(payload[0]["lon"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Geocoding returned an unexpected result for '{query}'")
            return None

    async def geocode_port(self, port_name: str, country: str) -> tuple[float, float] | None:
        return await self.geocode(f"{port_name} port, {country}")


_geocoder: NominatimGeocoder | None = None


def get_geocoder() -> NominatimGeocoder | None:
    """Shared geocoder so the rate limit holds across runs; None when disabled."""
    global _geocoder
    if not settings.geocoding_enabled:
        return None
    if _geocoder is None:
        _geocoder = NominatimGeocoder(
            url=settings.nominatim_url,
            user_agent=settings.geocoding_user_agent,
            min_interval_seconds=settings.geocoding_min_interval_seconds,
        )
    return _geocoder

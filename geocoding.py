"""Async forward-geocoding client (free text -> lat/lng) for trip endpoints.

Talks to an OpenStreetMap Nominatim compatible ``/search`` endpoint. Public
Nominatim is rate-limited to roughly one request per second and requires a
descriptive User-Agent; spacing between calls is the caller's job (see
``route_resolver.CallSpacer``), this client only issues single requests.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import httpx

from trip_models import GeocodeFailure

GEOCODE_URL = os.getenv("GEOCODE_URL", "https://nominatim.openstreetmap.org/search").strip()
GEOCODE_COUNTRY = os.getenv("GEOCODE_COUNTRY", "India").strip()
GEOCODE_COUNTRY_CODE = os.getenv("GEOCODE_COUNTRY_CODE", "in").strip()
GEOCODE_USER_AGENT = os.getenv(
    "GEOCODE_USER_AGENT", "trip-tracking/0.1 (fleet dashboard; set GEOCODE_USER_AGENT)"
).strip()
GEOCODE_HTTP_TIMEOUT_S = float(os.getenv("GEOCODE_HTTP_TIMEOUT_S", "10"))


@dataclass
class GeocoderConfig:
    base_url: str = GEOCODE_URL
    country: str = GEOCODE_COUNTRY
    country_code: str = GEOCODE_COUNTRY_CODE
    user_agent: str = GEOCODE_USER_AGENT
    timeout_seconds: float = GEOCODE_HTTP_TIMEOUT_S


class NominatimGeocoder:
    """Minimal async Nominatim search client returning the best hit only."""

    def __init__(
        self,
        config: Optional[GeocoderConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or GeocoderConfig()
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "NominatimGeocoder":
        return cls(GeocoderConfig())

    @property
    def country(self) -> str:
        return self.config.country

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def geocode(self, query: str) -> Tuple[float, float]:
        """Resolve ``query`` to ``(lat, lng)``.

        Raises GeocodeFailure when the provider has no result or replies with
        something other than JSON, and lets
        ``httpx.HTTPError`` through for transport problems.
        """
        client = await self._ensure_client()
        params = {
            "q": query,
            "format": "json",
            "limit": "1",
        }
        if self.config.country_code:
            params["countrycodes"] = self.config.country_code
        response = await client.get(
            self.config.base_url,
            params=params,
            headers={"User-Agent": self.config.user_agent, "Accept": "application/json"},
        )
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as exc:
            raise GeocodeFailure(f"non-JSON reply for {query!r}: {exc}") from exc
        return _parse_search_result(data, query)


def _parse_search_result(data: Any, query: str) -> Tuple[float, float]:
    if not isinstance(data, list) or not data:
        raise GeocodeFailure(f"no result for {query!r}")
    first = data[0]
    if not isinstance(first, dict):
        raise GeocodeFailure(f"unexpected result shape for {query!r}")
    try:
        lat = float(first.get("lat"))
        lng = float(first.get("lon", first.get("lng")))
    except (TypeError, ValueError):
        raise GeocodeFailure(f"result without coordinates for {query!r}")
    return lat, lng


__all__ = [
    "GEOCODE_COUNTRY",
    "GEOCODE_COUNTRY_CODE",
    "GEOCODE_URL",
    "GeocoderConfig",
    "NominatimGeocoder",
]

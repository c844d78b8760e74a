"""Async driving-route client for the planned pickup -> delivery overlay.

Uses an OSRM compatible ``/route/v1/driving`` endpoint. Coordinates go over
the wire as ``lng,lat`` and come back as GeoJSON ``[lng, lat]`` pairs; the
client flips them to ``[lat, lng]`` before handing them out.
"""
from __future__ import annotations

import os
from typing import Any, List, Optional, Tuple

import httpx

from trip_models import PlannedRoute, RouteFetchFailure

OSRM_ROUTE_URL = os.getenv(
    "OSRM_ROUTE_URL", "https://router.project-osrm.org/route/v1/driving"
).strip().rstrip("/")
OSRM_HTTP_TIMEOUT_S = float(os.getenv("OSRM_HTTP_TIMEOUT_S", "15"))


def _coerce_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_latlngs(coordinates: Any) -> List[List[float]]:
    """Turn GeoJSON ``[lng, lat]`` pairs into ``[lat, lng]`` pairs."""
    latlngs: List[List[float]] = []
    if not isinstance(coordinates, list):
        return latlngs
    for point in coordinates:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        lng = _coerce_float(point[0])
        lat = _coerce_float(point[1])
        if lat is None or lng is None:
            continue
        latlngs.append([lat, lng])
    return latlngs


class OSRMRouter:
    """Thin wrapper around the OSRM route service."""

    def __init__(
        self,
        base_url: str = OSRM_ROUTE_URL,
        timeout_s: float = OSRM_HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "OSRMRouter":
        return cls()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_route(
        self,
        origin: Tuple[float, float],
        destination: Tuple[float, float],
    ) -> PlannedRoute:
        """Fetch a driving route between two ``(lat, lng)`` points.

        Raises RouteFetchFailure for transport errors, non-OK codes and
        empty geometries alike.
        """
        origin_lat, origin_lng = origin
        dest_lat, dest_lng = destination
        url = f"{self.base_url}/{origin_lng},{origin_lat};{dest_lng},{dest_lat}"
        params = {"overview": "full", "geometries": "geojson"}

        client = await self._ensure_client()
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RouteFetchFailure(f"route request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise RouteFetchFailure("unexpected route response")
        code = data.get("code")
        routes = data.get("routes")
        if code != "Ok" or not isinstance(routes, list) or not routes:
            raise RouteFetchFailure(f"no route found (code={code})")

        best = routes[0] if isinstance(routes[0], dict) else {}
        geometry = best.get("geometry") if isinstance(best.get("geometry"), dict) else {}
        polyline = extract_latlngs(geometry.get("coordinates"))
        if len(polyline) < 2:
            raise RouteFetchFailure("route geometry empty")

        return PlannedRoute(
            polyline=polyline,
            distance_meters=_coerce_float(best.get("distance")),
            duration_seconds=_coerce_float(best.get("duration")),
        )


__all__ = ["OSRMRouter", "OSRM_ROUTE_URL", "extract_latlngs"]

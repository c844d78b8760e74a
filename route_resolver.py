"""
Planned-route pipeline for a trip: geocode missing endpoints, then fetch a
driving route between pickup and delivery.

Pipeline stages
===============
needs_geocode -> needs_route -> ready
       \\              \\
        +-> failed      +-> ready (straight-line fallback, route_error set)

- Geocoding runs only for endpoints that lack coordinates but carry a city or
  address, tries query variants in order and keeps the first hit. Every
  provider call is awaited one after the other, and consecutive calls are
  spaced by ``CallSpacer`` (1.1 s by default) to stay inside public
  Nominatim limits.
- The route is fetched once per resolved endpoint pair. Any failure (no
  route, HTTP error) falls back to a straight pickup -> delivery line.
- ``retry()`` is the only way to run the pipeline again; it is ignored while
  a run is in flight.
- ``dispose()`` flips the liveness flag; results that land afterwards are
  dropped without touching state.
"""
from __future__ import annotations

import asyncio
import os
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from trip_models import Endpoint, GeocodeFailure, PlannedRoute, RouteFetchFailure

GEOCODE_MIN_INTERVAL_S = float(os.getenv("GEOCODE_MIN_INTERVAL_S", "1.1"))

ROUTE_LOADING_TEXT = "Loading…"
ROUTE_FAILED_TEXT = "Route loading failed"


class PipelineStage(str, Enum):
    NEEDS_GEOCODE = "needs_geocode"
    NEEDS_ROUTE = "needs_route"
    READY = "ready"
    FAILED = "failed"


class Geocoder(Protocol):
    country: str

    async def geocode(self, query: str) -> Tuple[float, float]:
        ...


class RouteProvider(Protocol):
    async def fetch_route(
        self, origin: Tuple[float, float], destination: Tuple[float, float]
    ) -> PlannedRoute:
        ...


def geocode_queries(endpoint: Endpoint, country: str) -> List[str]:
    """Query variants for an endpoint, most specific first.

    Variants whose parts are missing are skipped and duplicates collapse, so
    an endpoint with only a city yields ``["City, Country", "City"]``.
    """
    city = (endpoint.city or "").strip()
    state = (endpoint.state or "").strip()
    address = (endpoint.address or "").strip()

    candidates: List[str] = []
    if city:
        candidates.append(", ".join(p for p in (city, state, country) if p))
    if address:
        candidates.append(", ".join(p for p in (address, city, state) if p))
    if city:
        candidates.append(city)

    queries: List[str] = []
    for query in candidates:
        if query not in queries:
            queries.append(query)
    return queries


class CallSpacer:
    """Keeps consecutive external calls at least ``min_interval_s`` apart.

    Each wait is named after the pipeline step that needs it
    (``next-variant``, ``next-endpoint``) and recorded in ``waits`` so the
    schedule can be inspected without any network in play. ``sleep`` and
    ``clock`` are injectable for the same reason.
    """

    def __init__(
        self,
        min_interval_s: float = GEOCODE_MIN_INTERVAL_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_s = min_interval_s
        self._sleep = sleep
        self._clock = clock
        self._last_call_at: Optional[float] = None
        self.waits: List[Tuple[str, float]] = []

    async def wait(self, step: str) -> float:
        if self._last_call_at is None:
            return 0.0
        remaining = self.min_interval_s - (self._clock() - self._last_call_at)
        if remaining <= 0:
            return 0.0
        self.waits.append((step, remaining))
        await self._sleep(remaining)
        return remaining

    def mark_call(self) -> None:
        self._last_call_at = self._clock()


class RouteResolver:
    """Owns the planned route of one trip session."""

    def __init__(
        self,
        pickup: Optional[Endpoint],
        delivery: Optional[Endpoint],
        geocoder: Geocoder,
        router: RouteProvider,
        *,
        spacer: Optional[CallSpacer] = None,
        on_change: Optional[Callable[["RouteResolver"], None]] = None,
    ) -> None:
        self.pickup = pickup
        self.delivery = delivery
        self.geocoder = geocoder
        self.router = router
        self.spacer = spacer or CallSpacer()
        self.on_change = on_change

        self.stage = PipelineStage.NEEDS_GEOCODE
        self.planned_route: Optional[PlannedRoute] = None
        self.route_error = False
        self.geocode_failed: Dict[str, bool] = {"pickup": False, "delivery": False}
        self.geocode_attempt = 0
        self._geocode_latch: Dict[str, bool] = {"pickup": False, "delivery": False}
        self._route_latch: Optional[Tuple[Tuple[float, float], Tuple[float, float]]] = None
        self._in_flight = False
        self._alive = True

    # Public API -----------------------------------------------------
    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def status_text(self) -> Optional[str]:
        if self._in_flight:
            return ROUTE_LOADING_TEXT
        if self.route_error:
            return ROUTE_FAILED_TEXT
        return None

    async def run(self) -> PipelineStage:
        if not self._alive or self._in_flight:
            return self.stage
        self._in_flight = True
        self._notify()
        try:
            await self._run_pipeline()
        finally:
            self._in_flight = False
        self._notify()
        return self.stage

    async def retry(self) -> bool:
        """Reset attempt state and latches, then run again from geocoding."""
        if not self._alive or self._in_flight:
            return False
        print("[route] manual retry requested")
        self.geocode_attempt = 0
        self.geocode_failed = {"pickup": False, "delivery": False}
        self._geocode_latch = {"pickup": False, "delivery": False}
        self._route_latch = None
        self.route_error = False
        await self.run()
        return True

    def dispose(self) -> None:
        self._alive = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "planned_route": self.planned_route.to_dict() if self.planned_route else None,
            "route_error": self.route_error,
            "geocode_failed": dict(self.geocode_failed),
            "geocode_attempt": self.geocode_attempt,
            "in_flight": self._in_flight,
            "status_text": self.status_text,
        }

    # Pipeline -------------------------------------------------------
    def _endpoints(self) -> List[Tuple[str, Optional[Endpoint]]]:
        return [("pickup", self.pickup), ("delivery", self.delivery)]

    def _needs_geocode(self) -> bool:
        for role, endpoint in self._endpoints():
            if endpoint is None or endpoint.has_coordinates:
                continue
            if endpoint.can_geocode and not self._geocode_latch[role]:
                return True
        return False

    def _both_resolved(self) -> bool:
        return all(ep is not None and ep.has_coordinates for _, ep in self._endpoints())

    async def _run_pipeline(self) -> None:
        if self._needs_geocode():
            self._set_stage(PipelineStage.NEEDS_GEOCODE)
            await self._geocode_missing()
            if not self._alive:
                return

        if not self._both_resolved():
            self.route_error = True
            self._set_stage(PipelineStage.FAILED)
            print(
                f"[route] endpoints unresolved pickup_failed={self.geocode_failed['pickup']} "
                f"delivery_failed={self.geocode_failed['delivery']}"
            )
            return

        self._set_stage(PipelineStage.NEEDS_ROUTE)
        await self._fetch_route()

    async def _geocode_missing(self) -> None:
        calls_made = False
        for role, endpoint in self._endpoints():
            if endpoint is None or endpoint.has_coordinates or not endpoint.can_geocode:
                continue
            if self._geocode_latch[role]:
                continue
            self._geocode_latch[role] = True

            resolved: Optional[Tuple[float, float]] = None
            for idx, query in enumerate(geocode_queries(endpoint, self.geocoder.country)):
                if idx > 0:
                    step = "next-variant"
                elif calls_made:
                    step = "next-endpoint"
                else:
                    step = "first-call"
                await self.spacer.wait(step)
                if not self._alive:
                    return

                self.geocode_attempt += 1
                calls_made = True
                try:
                    resolved = await self.geocoder.geocode(query)
                except GeocodeFailure:
                    resolved = None
                except httpx.HTTPError as exc:
                    print(f"[geocode] {role} request failed for {query!r}: {exc}")
                    resolved = None
                finally:
                    self.spacer.mark_call()
                if not self._alive:
                    return
                if resolved is not None:
                    break

            if resolved is None:
                self.geocode_failed[role] = True
                print(f"[geocode] {role} unresolved after {self.geocode_attempt} attempts")
                continue
            endpoint.lat, endpoint.lng = resolved
            print(f"[geocode] {role} resolved to {resolved[0]:.5f},{resolved[1]:.5f}")
            self._notify()

    async def _fetch_route(self) -> None:
        origin = self.pickup.coordinates()  # type: ignore[union-attr]
        destination = self.delivery.coordinates()  # type: ignore[union-attr]
        key = (origin, destination)
        if self._route_latch == key:
            if self.planned_route is not None:
                self._set_stage(PipelineStage.READY)
            return
        self._route_latch = key

        try:
            route = await self.router.fetch_route(origin, destination)
            route_error = False
        except (RouteFetchFailure, httpx.HTTPError) as exc:
            print(f"[route] falling back to straight line: {exc}")
            route = PlannedRoute.straight_line(origin, destination)
            route_error = True
        if not self._alive:
            return

        self.planned_route = route
        self.route_error = route_error
        self._set_stage(PipelineStage.READY)

    def _set_stage(self, stage: PipelineStage) -> None:
        self.stage = stage
        self._notify()

    def _notify(self) -> None:
        if self._alive and self.on_change is not None:
            self.on_change(self)


__all__ = [
    "CallSpacer",
    "GEOCODE_MIN_INTERVAL_S",
    "Geocoder",
    "PipelineStage",
    "ROUTE_FAILED_TEXT",
    "ROUTE_LOADING_TEXT",
    "RouteProvider",
    "RouteResolver",
    "geocode_queries",
]

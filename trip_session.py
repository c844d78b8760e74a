"""Per-trip session: the one owner of everything a trip view needs.

A ``TripSession`` wires the stream client, track reconciler, analytics,
route resolver and viewport controller together and hands out a single
JSON-ready snapshot after every change. Nothing outside the session mutates
its parts.
"""
from __future__ import annotations

import asyncio
import inspect
import os
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from distance_engine import (
    DEFAULT_ETA_SPEED_KMH,
    MPS_TO_KMH,
    TripStats,
    cumulative_distance_km,
    estimate_eta,
    haversine_km,
    trip_stats,
)
from location_stream import LocationStreamClient, StreamTransport
from route_resolver import CallSpacer, Geocoder, RouteProvider, RouteResolver
from stop_detector import StopDetectorParams, detect_stops_for_phase
from track_labels import select_time_labels
from track_reconciler import AppendResult, TrackReconciler
from trip_models import (
    ConnectionState,
    Endpoint,
    LocationPoint,
    PlannedRoute,
    StopEvent,
    TripPhase,
    isoformat_utc,
    phase_for_status,
    status_label,
)
from viewport import CameraCommand, ViewportController, renderable_points

AUTO_REFRESH_S = float(os.getenv("AUTO_REFRESH_S", "30"))
GEOFENCE_RADIUS_M = float(os.getenv("GEOFENCE_RADIUS_M", "500"))

EMPTY_STATE_TEXT = {
    TripPhase.PRE: "Location tracking begins when the driver starts the trip",
    TripPhase.ACTIVE: "Waiting for GPS",
    TripPhase.POST: "No location data recorded",
}

Listener = Callable[[Dict[str, Any]], None]


class AutoRefresher:
    """Calls ``callback`` every ``interval_s`` while enabled and ``is_active()``."""

    def __init__(
        self,
        callback: Callable[[], Union[None, Awaitable[None]]],
        is_active: Callable[[], bool],
        interval_s: float = AUTO_REFRESH_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.callback = callback
        self.is_active = is_active
        self.interval_s = interval_s
        self.enabled = True
        self.ticks = 0
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def tick(self) -> bool:
        if not self.enabled or not self.is_active():
            return False
        self.ticks += 1
        result = self.callback()
        if inspect.isawaitable(result):
            await result
        return True

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval_s)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                print(f"[session] auto-refresh callback failed: {e}")


class TripSession:
    def __init__(
        self,
        trip_id: str,
        *,
        status: Optional[str] = None,
        pickup: Optional[Endpoint] = None,
        delivery: Optional[Endpoint] = None,
        geocoder: Optional[Geocoder] = None,
        router: Optional[RouteProvider] = None,
        transport: Optional[StreamTransport] = None,
        spacer: Optional[CallSpacer] = None,
        stop_params: Optional[StopDetectorParams] = None,
        refresh_callback: Optional[Callable[[], Union[None, Awaitable[None]]]] = None,
        geofence_radius_m: float = GEOFENCE_RADIUS_M,
    ) -> None:
        self.trip_id = str(trip_id)
        self.status = status
        self.phase = phase_for_status(status)
        self.pickup = pickup
        self.delivery = delivery
        self.stop_params = stop_params or StopDetectorParams()
        self.geofence_radius_m = geofence_radius_m

        self.reconciler = TrackReconciler()
        self.viewport = ViewportController()
        self.stats: Optional[TripStats] = None
        self.stops: List[StopEvent] = []
        self.arrivals: Dict[str, Optional[datetime]] = {"pickup": None, "delivery": None}
        self.last_camera: Optional[CameraCommand] = None

        self.resolver: Optional[RouteResolver] = None
        if geocoder is not None and router is not None:
            self.resolver = RouteResolver(
                pickup, delivery, geocoder, router, spacer=spacer, on_change=self._on_route_change
            )

        self.stream: Optional[LocationStreamClient] = None
        if transport is not None:
            self.stream = LocationStreamClient(
                transport,
                on_location=self.handle_location,
                on_state_change=self._on_stream_state,
                on_status_change=self._on_remote_status,
            )

        self.refresher: Optional[AutoRefresher] = None
        if refresh_callback is not None:
            self.refresher = AutoRefresher(refresh_callback, lambda: self.phase == TripPhase.ACTIVE)

        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._route_task: Optional[asyncio.Task] = None
        self._alive = True

    # Lifecycle ------------------------------------------------------
    @property
    def alive(self) -> bool:
        return self._alive

    async def start(self) -> None:
        print(f"[session] start trip={self.trip_id} phase={self.phase.value}")
        if self.stream is not None:
            await self.stream.enable(self.trip_id, self.phase == TripPhase.ACTIVE)
        if self.resolver is not None and self.pickup is not None and self.delivery is not None:
            self._route_task = asyncio.create_task(self.resolver.run())
        if self.refresher is not None:
            self.refresher.start()
        self._update_camera()
        self._emit()

    async def wait_for_route(self) -> None:
        task = self._route_task
        if task is not None:
            await task

    async def dispose(self) -> None:
        if not self._alive:
            return
        self._alive = False
        print(f"[session] dispose trip={self.trip_id}")
        if self.resolver is not None:
            self.resolver.dispose()
        pending = [t for t in (self._route_task, *self._tasks) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self.refresher is not None:
            await self.refresher.stop()
        if self.stream is not None:
            await self.stream.disable()
        self._listeners.clear()

    # Listeners ------------------------------------------------------
    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Inputs ---------------------------------------------------------
    def handle_location(self, point: Union[LocationPoint, Mapping[str, Any]]) -> AppendResult:
        if not self._alive:
            return AppendResult(accepted=False, reason="disposed")
        result = self.reconciler.append(point)
        if not result.accepted:
            return result
        current = self.reconciler.current_location
        if current is not None:
            self._check_geofences(current)
        self.refresh_analytics()
        self._update_camera()
        self._emit()
        return result

    def seed_history(self, points: Iterable[Union[LocationPoint, Mapping[str, Any]]]) -> int:
        """Bulk-load a history snapshot and force one analytics pass."""
        if not self._alive:
            return 0
        accepted = self.reconciler.seed(points)
        current = self.reconciler.current_location
        if current is not None:
            self._check_geofences(current)
        self.refresh_analytics(force=True)
        self._update_camera()
        self._emit()
        return accepted

    async def set_status(self, status: str) -> TripPhase:
        if not self._alive:
            return self.phase
        previous = self.phase
        self.status = status
        self.phase = phase_for_status(status)
        if self.phase != previous:
            print(f"[session] trip={self.trip_id} phase {previous.value} -> {self.phase.value}")
            if self.stream is not None:
                await self.stream.enable(self.trip_id, self.phase == TripPhase.ACTIVE)
            if previous == TripPhase.ACTIVE:
                await self._abandon_route_work()
            self.refresh_analytics(force=True)
            self._update_camera()
        self._emit()
        return self.phase

    def user_drag(self) -> None:
        self.viewport.on_user_drag()
        self._emit()

    def recenter(self) -> Optional[CameraCommand]:
        command = self.viewport.recenter(
            current=self.reconciler.current_location,
            history=self.reconciler.history,
            pickup=self.pickup,
            delivery=self.delivery,
            planned_route=self._planned_route(),
        )
        if command is not None:
            self.last_camera = command
        self._emit()
        return command

    async def retry_route(self) -> bool:
        if self.resolver is None or not self._alive:
            return False
        return await self.resolver.retry()

    def refresh_analytics(self, force: bool = False) -> bool:
        """Recompute stats and stops, gated on track growth unless forced."""
        if not force and not self.reconciler.needs_recompute:
            return False
        history = self.reconciler.history
        self.stats = trip_stats(history)
        self.stops = detect_stops_for_phase(history, self.phase, self.stop_params)
        self.reconciler.mark_computed()
        return True

    # Derived values -------------------------------------------------
    def eta(self) -> Optional[str]:
        current = self.reconciler.current_location
        if self.phase != TripPhase.ACTIVE or current is None:
            return None
        if self.delivery is None or not self.delivery.has_coordinates:
            return None
        route = self._planned_route()
        if route is not None and route.distance_meters is not None:
            travelled = self.stats.total_distance_km if self.stats else cumulative_distance_km(self.reconciler.history)
            remaining_km = max(0.0, route.distance_meters / 1000.0 - travelled)
        else:
            remaining_km = haversine_km(current.lat, current.lng, self.delivery.lat, self.delivery.lng)  # type: ignore[arg-type]
        speed_kmh = current.speed * MPS_TO_KMH if current.speed else DEFAULT_ETA_SPEED_KMH
        return estimate_eta(remaining_km, speed_kmh)

    def empty_state_text(self) -> Optional[str]:
        points = renderable_points(
            self.reconciler.current_location,
            self.reconciler.history,
            self.pickup,
            self.delivery,
            self._planned_route(),
        )
        if points:
            return None
        return EMPTY_STATE_TEXT[self.phase]

    def snapshot(self) -> Dict[str, Any]:
        history = self.reconciler.history
        current = self.reconciler.current_location
        return {
            "trip_id": self.trip_id,
            "status": self.status,
            "status_label": status_label(self.status) if self.status else None,
            "phase": self.phase.value,
            "connection": self.stream.to_dict() if self.stream else {"state": ConnectionState.DISCONNECTED.value},
            "current_location": current.to_dict() if current else None,
            "track": [p.as_latlng() for p in history],
            "points": len(history),
            "time_labels": [label.to_dict() for label in select_time_labels(history)],
            "stats": self.stats.to_dict() if self.stats else None,
            "stops": [s.to_dict() for s in self.stops],
            "eta": self.eta(),
            "pickup": self.pickup.to_dict() if self.pickup else None,
            "delivery": self.delivery.to_dict() if self.delivery else None,
            "route": self.resolver.to_dict() if self.resolver else None,
            "viewport": self.viewport.to_dict(),
            "camera": self.last_camera.to_dict() if self.last_camera else None,
            "arrivals": {k: isoformat_utc(v) for k, v in self.arrivals.items()},
            "empty_state": self.empty_state_text(),
            "diagnostics": self.reconciler.diagnostics(),
        }

    # Internals ------------------------------------------------------
    def _planned_route(self) -> Optional[PlannedRoute]:
        return self.resolver.planned_route if self.resolver is not None else None

    async def _abandon_route_work(self) -> None:
        task, self._route_task = self._route_task, None
        if task is None or task.done():
            return
        print(f"[session] trip={self.trip_id} left active phase; abandoning route resolution")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _check_geofences(self, point: LocationPoint) -> None:
        for role, endpoint in (("pickup", self.pickup), ("delivery", self.delivery)):
            if endpoint is None or not endpoint.has_coordinates or self.arrivals[role] is not None:
                continue
            dist_m = haversine_km(point.lat, point.lng, endpoint.lat, endpoint.lng) * 1000.0  # type: ignore[arg-type]
            if dist_m <= self.geofence_radius_m:
                self.arrivals[role] = point.timestamp or datetime.now(timezone.utc)
                print(f"[session] trip={self.trip_id} arrived at {role} ({dist_m:.0f} m from {endpoint.label()})")

    def _update_camera(self) -> None:
        command = self.viewport.update(
            current=self.reconciler.current_location,
            history=self.reconciler.history,
            pickup=self.pickup,
            delivery=self.delivery,
            planned_route=self._planned_route(),
            phase=self.phase,
        )
        if command is not None:
            self.last_camera = command

    def _on_route_change(self, _resolver: RouteResolver) -> None:
        if not self._alive:
            return
        self._update_camera()
        self._emit()

    def _on_stream_state(self, _state: ConnectionState) -> None:
        self._emit()

    def _on_remote_status(self, status: str) -> None:
        if not self._alive:
            return
        task = asyncio.create_task(self.set_status(status))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit(self) -> None:
        if not self._alive or not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)


__all__ = [
    "AUTO_REFRESH_S",
    "AutoRefresher",
    "EMPTY_STATE_TEXT",
    "GEOFENCE_RADIUS_M",
    "TripSession",
]

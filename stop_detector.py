"""Dwell ("stop") detection over a trip's track history.

A stop is a run of consecutive fixes that all stay within ``radius_km`` of
the first fix of the run (the anchor) for at least ``min_duration_ms``.
Using a spatial radius instead of zero speed keeps GPS jitter while parked
from splitting one stop into many, while any real movement beyond the radius
closes the run.

The detector is pure: it is recomputed from scratch on every call and keeps
no clustering state between calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence
import os

from distance_engine import point_distance_km
from trip_models import LocationPoint, StopEvent, TripPhase

STOP_MIN_DURATION_MS = int(os.getenv("STOP_MIN_DURATION_MS", str(3 * 60 * 1000)))
STOP_RADIUS_KM = float(os.getenv("STOP_RADIUS_KM", "0.1"))

# Stops only make sense once the truck is moving (or the trip is over)
STOP_DETECTION_PHASES = (TripPhase.ACTIVE, TripPhase.POST)


@dataclass(frozen=True)
class StopDetectorParams:
    min_duration_ms: int = STOP_MIN_DURATION_MS
    radius_km: float = STOP_RADIUS_KM


def _close_cluster(points: Sequence[LocationPoint], start: int, end: int, params: StopDetectorParams) -> Optional[StopEvent]:
    """Evaluate points[start..end] (inclusive) as a candidate stop."""
    first = points[start]
    last = points[end]
    elapsed = last.time_ms - first.time_ms  # type: ignore[operator]
    if elapsed < params.min_duration_ms:
        return None
    members = points[start:end + 1]
    return StopEvent(
        lat=sum(p.lat for p in members) / len(members),
        lng=sum(p.lng for p in members) / len(members),
        start_time=first.timestamp,  # type: ignore[arg-type]
        end_time=last.timestamp,  # type: ignore[arg-type]
    )


def detect_stops(
    history: Sequence[LocationPoint],
    params: Optional[StopDetectorParams] = None,
) -> List[StopEvent]:
    """Return dwell events for ``history`` in chronological order.

    Only timestamped points take part; fewer than three of them yields no
    stops.
    """
    params = params or StopDetectorParams()
    points = [p for p in history if p.timestamp is not None]
    n = len(points)
    if n < 3:
        return []

    stops: List[StopEvent] = []
    cluster_start = 0
    for i in range(1, n):
        if point_distance_km(points[cluster_start], points[i]) > params.radius_km:
            stop = _close_cluster(points, cluster_start, i - 1, params)
            if stop is not None:
                stops.append(stop)
            cluster_start = i

    if cluster_start < n - 1:
        stop = _close_cluster(points, cluster_start, n - 1, params)
        if stop is not None:
            stops.append(stop)
    return stops


def detect_stops_for_phase(
    history: Sequence[LocationPoint],
    phase: TripPhase,
    params: Optional[StopDetectorParams] = None,
) -> List[StopEvent]:
    if phase not in STOP_DETECTION_PHASES:
        return []
    return detect_stops(history, params)


__all__ = [
    "STOP_DETECTION_PHASES",
    "STOP_MIN_DURATION_MS",
    "STOP_RADIUS_KM",
    "StopDetectorParams",
    "detect_stops",
    "detect_stops_for_phase",
]

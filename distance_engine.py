"""Distance, speed and duration helpers over track point lists.

Everything here is pure: no state, no I/O. Distances are kilometres, speeds
km/h, durations milliseconds unless a name says otherwise.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence
import math
import os

from trip_models import LocationPoint, isoformat_utc

EARTH_RADIUS_KM = 6371.0
MPS_TO_KMH = 3.6

# Used for ETA when the live fix carries no speed
DEFAULT_ETA_SPEED_KMH = float(os.getenv("DEFAULT_ETA_SPEED_KMH", "50"))


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two lat/lng points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_distance_km(a: LocationPoint, b: LocationPoint) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def cumulative_distance_km(points: Sequence[LocationPoint]) -> float:
    total = 0.0
    for prev, cur in zip(points, points[1:]):
        total += point_distance_km(prev, cur)
    return total


@dataclass
class TripStats:
    total_distance_km: float
    travel_time_ms: int
    avg_speed_kmh: float
    max_speed_kmh: float
    start_time: datetime
    end_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_distance_km": self.total_distance_km,
            "travel_time_ms": self.travel_time_ms,
            "travel_time": format_duration(self.travel_time_ms),
            "avg_speed_kmh": self.avg_speed_kmh,
            "max_speed_kmh": self.max_speed_kmh,
            "start_time": isoformat_utc(self.start_time),
            "end_time": isoformat_utc(self.end_time),
        }


def trip_stats(points: Sequence[LocationPoint]) -> Optional[TripStats]:
    """Aggregate distance and speed statistics for a track.

    Needs at least two timestamped points, otherwise returns None. Points
    without a timestamp still count towards distance but not elapsed time.
    """
    times = [p.time_ms for p in points if p.time_ms is not None]
    if len(times) < 2:
        return None

    distance = cumulative_distance_km(points)
    earliest = min(times)
    latest = max(times)
    elapsed_ms = latest - earliest
    avg_speed = distance / (elapsed_ms / 3_600_000) if elapsed_ms > 0 else 0.0

    max_speed = 0.0
    for p in points:
        if p.speed is not None and p.speed * MPS_TO_KMH > max_speed:
            max_speed = p.speed * MPS_TO_KMH

    return TripStats(
        total_distance_km=distance,
        travel_time_ms=elapsed_ms,
        avg_speed_kmh=avg_speed,
        max_speed_kmh=max_speed,
        start_time=datetime.fromtimestamp(earliest / 1000, tz=timezone.utc),
        end_time=datetime.fromtimestamp(latest / 1000, tz=timezone.utc),
    )


def format_duration(ms: float) -> str:
    if ms < 0:
        return "—"
    hours = int(ms // 3_600_000)
    mins = int((ms % 3_600_000) // 60_000)
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"


def estimate_eta(distance_km: float, speed_kmh: float) -> str:
    if speed_kmh <= 0:
        return "N/A"
    hours = max(0.0, distance_km) / speed_kmh
    h = int(hours)
    m = int((hours - h) * 60)
    return f"{h}h {m}m"


__all__ = [
    "DEFAULT_ETA_SPEED_KMH",
    "EARTH_RADIUS_KM",
    "TripStats",
    "cumulative_distance_km",
    "estimate_eta",
    "format_duration",
    "haversine_km",
    "point_distance_km",
    "trip_stats",
]

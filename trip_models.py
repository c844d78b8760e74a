from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
import math


class TrackingError(Exception):
    """Base class for recoverable failures inside the tracking core."""


class TransportError(TrackingError):
    """Stream connect/subscribe failure."""


class GeocodeFailure(TrackingError):
    """Every geocoding query variant came back empty."""


class RouteFetchFailure(TrackingError):
    """Routing provider failed or answered without a usable route."""


class MalformedPoint(TrackingError):
    """A location payload without usable lat/lng."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TripPhase(str, Enum):
    PRE = "pre"
    ACTIVE = "active"
    POST = "post"


PRE_TRIP_STATUSES = ("assigned", "trip_accepted")
ACTIVE_STATUSES = (
    "trip_started",
    "shipper_check_in",
    "shipper_load_in",
    "shipper_load_out",
    "in_transit",
    "receiver_check_in",
    "receiver_offload",
)
POST_TRIP_STATUSES = ("delivered", "completed")

STATUS_LABELS: Dict[str, str] = {
    "assigned": "Assigned",
    "trip_accepted": "Ready to Start",
    "trip_started": "On Route to Pickup",
    "shipper_check_in": "Checked In at Shipper",
    "shipper_load_in": "Loading",
    "shipper_load_out": "Loaded — En Route",
    "in_transit": "In Transit",
    "receiver_check_in": "At Receiver",
    "receiver_offload": "Offloading",
    "delivered": "Delivered",
    "completed": "Completed",
}


def phase_for_status(status: Optional[str]) -> TripPhase:
    """Map a load status onto the coarse trip phase.

    Unknown or missing statuses are treated as pre-trip so that nothing is
    tracked before the driver has actually started.
    """
    key = (status or "").strip().lower()
    if key in ACTIVE_STATUSES:
        return TripPhase.ACTIVE
    if key in POST_TRIP_STATUSES:
        return TripPhase.POST
    return TripPhase.PRE


def status_label(status: Optional[str]) -> str:
    key = (status or "").strip()
    return STATUS_LABELS.get(key.lower()) or key.replace("_", " ")


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch milliseconds or datetime into UTC.

    Returns None for missing or unparseable values; a point without a usable
    timestamp is still a valid point.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return _to_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def to_epoch_ms(dt: datetime) -> int:
    return int(round(_to_utc(dt).timestamp() * 1000))


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class LocationPoint:
    """A single GPS fix. Speed is in m/s, accuracy in meters."""
    lat: float
    lng: float
    timestamp: Optional[datetime] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None

    @property
    def time_ms(self) -> Optional[int]:
        if self.timestamp is None:
            return None
        return to_epoch_ms(self.timestamp)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LocationPoint":
        """Build a point from a wire payload (LocationUpdate).

        Raises MalformedPoint when lat/lng are missing, non-numeric or out of
        range.
        """
        if not isinstance(payload, Mapping):
            raise MalformedPoint(f"expected mapping, got {type(payload).__name__}")
        lat = _coerce_float(payload.get("lat", payload.get("latitude")))
        lng = _coerce_float(payload.get("lng", payload.get("longitude", payload.get("lon"))))
        if lat is None or lng is None:
            raise MalformedPoint("missing lat/lng")
        if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
            raise MalformedPoint(f"coordinates out of range: {lat},{lng}")
        return cls(
            lat=lat,
            lng=lng,
            timestamp=parse_timestamp(payload.get("timestamp")),
            speed=_coerce_float(payload.get("speed")),
            accuracy=_coerce_float(payload.get("accuracy")),
            heading=_coerce_float(payload.get("heading")),
        )

    def as_latlng(self) -> List[float]:
        return [self.lat, self.lng]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": isoformat_utc(self.timestamp),
            "speed": self.speed,
            "accuracy": self.accuracy,
            "heading": self.heading,
        }


@dataclass
class Endpoint:
    """Pickup or delivery location. May start without coordinates."""
    lat: Optional[float] = None
    lng: Optional[float] = None
    city: Optional[str] = None
    state: Optional[str] = None
    address: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def can_geocode(self) -> bool:
        return bool((self.city or "").strip() or (self.address or "").strip())

    def coordinates(self) -> Optional[Tuple[float, float]]:
        if not self.has_coordinates:
            return None
        return (float(self.lat), float(self.lng))  # type: ignore[arg-type]

    def label(self) -> str:
        parts = [p for p in (self.address, self.city, self.state) if p]
        return ", ".join(parts) or "Unknown"

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> Optional["Endpoint"]:
        if not payload:
            return None
        lat = _coerce_float(payload.get("lat"))
        lng = _coerce_float(payload.get("lng"))
        # A lone coordinate is as good as none.
        if lat is None or lng is None:
            lat = lng = None
        return cls(
            lat=lat,
            lng=lng,
            city=(payload.get("city") or None),
            state=(payload.get("state") or None),
            address=(payload.get("address") or None),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "city": self.city,
            "state": self.state,
            "address": self.address,
            "label": self.label(),
        }


@dataclass(frozen=True)
class StopEvent:
    """A dwell interval: centroid plus start/end of the cluster."""
    lat: float
    lng: float
    start_time: datetime
    end_time: datetime

    @property
    def duration_ms(self) -> int:
        return to_epoch_ms(self.end_time) - to_epoch_ms(self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "start_time": isoformat_utc(self.start_time),
            "end_time": isoformat_utc(self.end_time),
            "duration_ms": self.duration_ms,
        }


@dataclass
class PlannedRoute:
    polyline: List[List[float]] = field(default_factory=list)
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None
    is_fallback: bool = False

    @classmethod
    def straight_line(cls, origin: Tuple[float, float], destination: Tuple[float, float]) -> "PlannedRoute":
        return cls(
            polyline=[[origin[0], origin[1]], [destination[0], destination[1]]],
            is_fallback=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polyline": [list(p) for p in self.polyline],
            "distance_meters": self.distance_meters,
            "duration_seconds": self.duration_seconds,
            "is_fallback": self.is_fallback,
        }


__all__ = [
    "ACTIVE_STATUSES",
    "ConnectionState",
    "Endpoint",
    "GeocodeFailure",
    "LocationPoint",
    "MalformedPoint",
    "PlannedRoute",
    "POST_TRIP_STATUSES",
    "PRE_TRIP_STATUSES",
    "RouteFetchFailure",
    "STATUS_LABELS",
    "StopEvent",
    "TrackingError",
    "TransportError",
    "TripPhase",
    "isoformat_utc",
    "parse_timestamp",
    "phase_for_status",
    "status_label",
    "to_epoch_ms",
]

"""Time-labelled markers along the driven track.

Picks which history points get a marker on the actual-track overlay so the
map stays readable: short trips get a label every few minutes, long trips
every hour, and a label is promoted to "major" (date + time) when the day
changes or when the track went quiet for a while.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo
import os

from trip_models import LocationPoint

DISPLAY_TZ = ZoneInfo(os.getenv("DISPLAY_TZ", "Asia/Kolkata"))
MAX_TIME_LABELS = 25
UNTIMED_DOT_TARGET = 12

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS


@dataclass
class TrackLabel:
    point: LocationPoint
    kind: str  # "major", "minor" or "dot"
    text: Optional[str] = None
    speed_kmh: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.point.lat,
            "lng": self.point.lng,
            "kind": self.kind,
            "text": self.text,
            "speed_kmh": self.speed_kmh,
        }


def label_interval_ms(span_ms: int) -> int:
    span_hours = span_ms / HOUR_MS
    if span_hours <= 1:
        return 5 * MINUTE_MS
    if span_hours <= 3:
        return 15 * MINUTE_MS
    if span_hours <= 8:
        return 30 * MINUTE_MS
    return 60 * MINUTE_MS


def format_time(point: LocationPoint, tz: ZoneInfo = DISPLAY_TZ) -> str:
    return point.timestamp.astimezone(tz).strftime("%I:%M %p")  # type: ignore[union-attr]


def format_date_time(point: LocationPoint, tz: ZoneInfo = DISPLAY_TZ) -> str:
    local = point.timestamp.astimezone(tz)  # type: ignore[union-attr]
    return f"{local.strftime('%b')} {local.day}, {local.strftime('%I:%M %p')}"


def _speed_kmh(point: LocationPoint) -> Optional[float]:
    if not point.speed:
        return None
    return round(point.speed * 3.6)


def select_time_labels(history: Sequence[LocationPoint], tz: ZoneInfo = DISPLAY_TZ) -> List[TrackLabel]:
    total = len(history)
    if total <= 1:
        return []

    timed = [p for p in history if p.timestamp is not None]
    if len(timed) <= 1:
        step = max(1, total // UNTIMED_DOT_TARGET)
        return [TrackLabel(point=history[i], kind="dot") for i in range(step, total, step)]

    first_ms = timed[0].time_ms
    last_ms = timed[-1].time_ms
    interval = label_interval_ms(last_ms - first_ms)  # type: ignore[operator]

    labels: List[TrackLabel] = []
    last_label_ms = first_ms
    last_label_day = timed[0].timestamp.astimezone(tz).date()  # type: ignore[union-attr]
    for point in timed[1:]:
        if len(labels) >= MAX_TIME_LABELS:
            break
        pt_ms = point.time_ms
        gap = pt_ms - last_label_ms  # type: ignore[operator]
        if gap < interval:
            continue
        day = point.timestamp.astimezone(tz).date()  # type: ignore[union-attr]
        if day != last_label_day or gap >= interval * 3:
            labels.append(TrackLabel(point, "major", format_date_time(point, tz), _speed_kmh(point)))
        else:
            labels.append(TrackLabel(point, "minor", format_time(point, tz), _speed_kmh(point)))
        last_label_ms = pt_ms
        last_label_day = day
    return labels


__all__ = [
    "DISPLAY_TZ",
    "MAX_TIME_LABELS",
    "TrackLabel",
    "format_date_time",
    "format_time",
    "label_interval_ms",
    "select_time_labels",
]

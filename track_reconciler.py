from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Union

from trip_models import LocationPoint, MalformedPoint

# Recompute distance/stops only once this many points have piled up
RECOMPUTE_MIN_NEW_POINTS = 3


@dataclass
class AppendResult:
    """Outcome of feeding one fix into the reconciler."""
    accepted: bool
    replaced: bool = False
    reason: Optional[str] = None


class TrackReconciler:
    """
    Keeps the ordered track history of a single trip.

    Rules, applied per incoming fix:
    - no usable lat/lng -> dropped (never enters the history)
    - same timestamp as the newest timestamped entry -> replaces that entry
    - timestamp older than the newest one already seen -> dropped as stale
    - anything else -> appended

    Points without a timestamp carry no ordering information and are always
    appended. ``current_location`` follows the newest entry of the history, while
    ``needs_recompute`` only turns true once more than
    ``RECOMPUTE_MIN_NEW_POINTS`` points arrived since the last computation.
    """

    def __init__(self, recompute_min_new_points: int = RECOMPUTE_MIN_NEW_POINTS) -> None:
        self.recompute_min_new_points = recompute_min_new_points
        self._history: List[LocationPoint] = []
        self.current_location: Optional[LocationPoint] = None
        self.last_computed_count = 0
        self._latest_timestamp: Optional[datetime] = None
        self._latest_index: Optional[int] = None
        self.dropped_malformed = 0
        self.dropped_stale = 0
        self.replaced = 0

    @property
    def history(self) -> List[LocationPoint]:
        return list(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def append(self, point: Union[LocationPoint, Mapping[str, Any]]) -> AppendResult:
        if not isinstance(point, LocationPoint):
            try:
                point = LocationPoint.from_payload(point)
            except MalformedPoint:
                self.dropped_malformed += 1
                return AppendResult(accepted=False, reason="malformed")

        ts = point.timestamp
        if ts is not None and self._latest_index is not None and ts == self._latest_timestamp:
            # redelivery of the newest fix, possibly with untimed fixes after it
            self._history[self._latest_index] = point
            if self._latest_index == len(self._history) - 1:
                self.current_location = point
            self.replaced += 1
            return AppendResult(accepted=True, replaced=True)

        if ts is not None and self._latest_timestamp is not None and ts < self._latest_timestamp:
            self.dropped_stale += 1
            print(
                f"[reconciler] dropping stale fix ts={ts.isoformat()} "
                f"latest={self._latest_timestamp.isoformat()}"
            )
            return AppendResult(accepted=False, reason="stale")

        self._history.append(point)
        self.current_location = point
        if ts is not None:
            self._latest_timestamp = ts
            self._latest_index = len(self._history) - 1
        return AppendResult(accepted=True)

    def seed(self, points: Iterable[Union[LocationPoint, Mapping[str, Any]]]) -> int:
        """Load a history snapshot through the same rules; returns accepted count."""
        accepted = 0
        for point in points:
            if self.append(point).accepted:
                accepted += 1
        return accepted

    @property
    def pending_points(self) -> int:
        return len(self._history) - self.last_computed_count

    @property
    def needs_recompute(self) -> bool:
        return self.pending_points > self.recompute_min_new_points

    def mark_computed(self) -> None:
        self.last_computed_count = len(self._history)

    def diagnostics(self) -> dict:
        return {
            "points": len(self._history),
            "last_computed_count": self.last_computed_count,
            "dropped_malformed": self.dropped_malformed,
            "dropped_stale": self.dropped_stale,
            "replaced": self.replaced,
        }


__all__ = ["AppendResult", "RECOMPUTE_MIN_NEW_POINTS", "TrackReconciler"]

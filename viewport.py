"""Camera state machine for the trip map.

AUTO_FIT      first renderable points -> fit_bounds, then follow the truck
              (pan_to per new fix, re-fit after a burst of new points)
USER_CONTROLLED
              entered on any drag; only an explicit recenter leaves it

Commands are plain values; drawing them is the map surface's job.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from trip_models import Endpoint, LocationPoint, PlannedRoute, TripPhase

FIT_PADDING_PX = 50
FIT_MAX_ZOOM = 15
FLY_TO_ZOOM = 15
REFIT_MIN_NEW_POINTS = 3


class ViewportMode(str, Enum):
    AUTO_FIT = "auto_fit"
    USER_CONTROLLED = "user_controlled"


@dataclass
class CameraCommand:
    kind: str  # "fit_bounds", "pan_to" or "fly_to"
    points: List[List[float]] = field(default_factory=list)
    point: Optional[List[float]] = None
    padding: Optional[int] = None
    max_zoom: Optional[int] = None
    zoom: Optional[int] = None

    @classmethod
    def fit_bounds(cls, points: Sequence[Sequence[float]], padding: int = FIT_PADDING_PX, max_zoom: int = FIT_MAX_ZOOM) -> "CameraCommand":
        return cls("fit_bounds", points=[list(p) for p in points], padding=padding, max_zoom=max_zoom)

    @classmethod
    def pan_to(cls, point: Sequence[float]) -> "CameraCommand":
        return cls("pan_to", point=list(point))

    @classmethod
    def fly_to(cls, point: Sequence[float], zoom: int = FLY_TO_ZOOM) -> "CameraCommand":
        return cls("fly_to", point=list(point), zoom=zoom)

    @property
    def bounds(self) -> Optional[List[List[float]]]:
        return bounds_of(self.points)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind}
        if self.kind == "fit_bounds":
            out.update(bounds=self.bounds, padding=self.padding, max_zoom=self.max_zoom, points=len(self.points))
        else:
            out["point"] = self.point
            if self.zoom is not None:
                out["zoom"] = self.zoom
        return out


def bounds_of(points: Sequence[Sequence[float]]) -> Optional[List[List[float]]]:
    """South-west / north-east corners of ``points``, or None when empty."""
    if not points:
        return None
    lats = [p[0] for p in points]
    lngs = [p[1] for p in points]
    return [[min(lats), min(lngs)], [max(lats), max(lngs)]]


def renderable_points(
    current: Optional[LocationPoint],
    history: Sequence[LocationPoint],
    pickup: Optional[Endpoint] = None,
    delivery: Optional[Endpoint] = None,
    planned_route: Optional[PlannedRoute] = None,
) -> List[List[float]]:
    points: List[List[float]] = []
    if current is not None:
        points.append(current.as_latlng())
    points.extend(p.as_latlng() for p in history)
    for endpoint in (pickup, delivery):
        if endpoint is not None and endpoint.has_coordinates:
            points.append([endpoint.lat, endpoint.lng])  # type: ignore[list-item]
    if planned_route is not None:
        points.extend(list(p) for p in planned_route.polyline)
    return points


class ViewportController:
    def __init__(self) -> None:
        self.mode = ViewportMode.AUTO_FIT
        self.has_fitted_once = False
        self.last_fit_point_count = 0
        self.last_command: Optional[CameraCommand] = None
        self._followed: Optional[LocationPoint] = None

    def update(
        self,
        *,
        current: Optional[LocationPoint],
        history: Sequence[LocationPoint],
        pickup: Optional[Endpoint] = None,
        delivery: Optional[Endpoint] = None,
        planned_route: Optional[PlannedRoute] = None,
        phase: TripPhase = TripPhase.ACTIVE,
    ) -> Optional[CameraCommand]:
        """Decide the camera move (if any) for the latest session state."""
        if self.mode != ViewportMode.AUTO_FIT:
            return None

        if not self.has_fitted_once:
            points = renderable_points(current, history, pickup, delivery, planned_route)
            if not points:
                return None
            return self._fit(points, current, len(history))

        if phase != TripPhase.ACTIVE or current is None or current == self._followed:
            return None

        if len(history) - self.last_fit_point_count > REFIT_MIN_NEW_POINTS:
            points = renderable_points(current, history, pickup, delivery, planned_route)
            return self._fit(points, current, len(history))

        self._followed = current
        return self._issue(CameraCommand.pan_to(current.as_latlng()))

    def on_user_drag(self) -> None:
        if self.mode != ViewportMode.USER_CONTROLLED:
            print("[viewport] user took control of the camera")
        self.mode = ViewportMode.USER_CONTROLLED

    def recenter(
        self,
        *,
        current: Optional[LocationPoint],
        history: Sequence[LocationPoint],
        pickup: Optional[Endpoint] = None,
        delivery: Optional[Endpoint] = None,
        planned_route: Optional[PlannedRoute] = None,
    ) -> Optional[CameraCommand]:
        """Back to AUTO_FIT: fly to the truck, or fit everything when there is none yet."""
        self.mode = ViewportMode.AUTO_FIT
        if current is not None:
            self.has_fitted_once = True
            self.last_fit_point_count = len(history)
            self._followed = current
            return self._issue(CameraCommand.fly_to(current.as_latlng()))
        points = renderable_points(current, history, pickup, delivery, planned_route)
        if not points:
            return None
        return self._fit(points, current, len(history))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "has_fitted_once": self.has_fitted_once,
            "last_fit_point_count": self.last_fit_point_count,
            "last_command": self.last_command.to_dict() if self.last_command else None,
        }

    def _fit(self, points: List[List[float]], current: Optional[LocationPoint], history_len: int) -> CameraCommand:
        self.has_fitted_once = True
        self.last_fit_point_count = history_len
        self._followed = current
        return self._issue(CameraCommand.fit_bounds(points))

    def _issue(self, command: CameraCommand) -> CameraCommand:
        self.last_command = command
        return command


__all__ = [
    "CameraCommand",
    "FIT_MAX_ZOOM",
    "FIT_PADDING_PX",
    "FLY_TO_ZOOM",
    "REFIT_MIN_NEW_POINTS",
    "ViewportController",
    "ViewportMode",
    "bounds_of",
    "renderable_points",
]

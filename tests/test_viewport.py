import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from trip_models import Endpoint, LocationPoint, PlannedRoute, TripPhase  # noqa: E402
from viewport import ViewportController, ViewportMode, bounds_of, renderable_points  # noqa: E402

T0 = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)


def _pt(i):
    return LocationPoint(lat=12.9 + i * 0.001, lng=80.1 + i * 0.001, timestamp=T0 + timedelta(seconds=30 * i))


class TestViewportController(unittest.TestCase):
    def setUp(self):
        self.vc = ViewportController()
        self.history = []

    def _feed(self, i, phase=TripPhase.ACTIVE):
        point = _pt(i)
        self.history.append(point)
        return self.vc.update(current=point, history=list(self.history), phase=phase)

    def test_initial_state(self):
        self.assertEqual(self.vc.mode, ViewportMode.AUTO_FIT)
        self.assertFalse(self.vc.has_fitted_once)
        self.assertIsNone(self.vc.update(current=None, history=[]))

    def test_first_point_fits_bounds(self):
        cmd = self._feed(0)
        self.assertEqual(cmd.kind, "fit_bounds")
        self.assertEqual(cmd.padding, 50)
        self.assertEqual(cmd.max_zoom, 15)
        self.assertTrue(self.vc.has_fitted_once)
        self.assertEqual(self.vc.last_fit_point_count, 1)

    def test_new_locations_pan_until_history_grows(self):
        self._feed(0)
        for i in range(1, 4):
            cmd = self._feed(i)
            self.assertEqual(cmd.kind, "pan_to")
            self.assertEqual(cmd.point, _pt(i).as_latlng())
        cmd = self._feed(4)
        self.assertEqual(cmd.kind, "fit_bounds")
        self.assertEqual(self.vc.last_fit_point_count, 5)

    def test_same_location_does_not_move_camera(self):
        self._feed(0)
        self._feed(1)
        again = self.vc.update(current=self.history[-1], history=list(self.history))
        self.assertIsNone(again)

    def test_no_following_outside_active_phase(self):
        self._feed(0, phase=TripPhase.POST)
        self.assertIsNone(self._feed(1, phase=TripPhase.POST))

    def test_drag_hands_control_to_user(self):
        self._feed(0)
        self.vc.on_user_drag()
        self.assertEqual(self.vc.mode, ViewportMode.USER_CONTROLLED)
        for i in range(1, 10):
            self.assertIsNone(self._feed(i))
        self.assertEqual(self.vc.mode, ViewportMode.USER_CONTROLLED)

    def test_drag_before_first_fit(self):
        self.vc.on_user_drag()
        self.assertIsNone(self._feed(0))
        self.assertFalse(self.vc.has_fitted_once)

    def test_recenter_flies_to_current_location(self):
        self._feed(0)
        self.vc.on_user_drag()
        self._feed(1)
        cmd = self.vc.recenter(current=self.history[-1], history=list(self.history))
        self.assertEqual(self.vc.mode, ViewportMode.AUTO_FIT)
        self.assertEqual(cmd.kind, "fly_to")
        self.assertEqual(cmd.zoom, 15)
        self.assertEqual(cmd.point, _pt(1).as_latlng())

    def test_recenter_without_location_fits_endpoints(self):
        pickup = Endpoint(12.9, 80.1)
        delivery = Endpoint(13.1, 80.3)
        self.vc.on_user_drag()
        cmd = self.vc.recenter(current=None, history=[], pickup=pickup, delivery=delivery)
        self.assertEqual(self.vc.mode, ViewportMode.AUTO_FIT)
        self.assertEqual(cmd.kind, "fit_bounds")
        self.assertEqual(cmd.bounds, [[12.9, 80.1], [13.1, 80.3]])

    def test_endpoints_alone_trigger_first_fit(self):
        cmd = self.vc.update(current=None, history=[], pickup=Endpoint(12.9, 80.1), delivery=Endpoint(city="Hosur"))
        self.assertEqual(cmd.kind, "fit_bounds")
        self.assertEqual(cmd.points, [[12.9, 80.1]])


class TestRenderablePoints(unittest.TestCase):
    def test_collects_every_layer(self):
        route = PlannedRoute(polyline=[[12.0, 79.0], [14.0, 81.0]])
        points = renderable_points(_pt(1), [_pt(0), _pt(1)], Endpoint(12.5, 80.0), None, route)
        self.assertEqual(len(points), 6)
        self.assertEqual(bounds_of(points), [[12.0, 79.0], [14.0, 81.0]])

    def test_bounds_of_empty(self):
        self.assertIsNone(bounds_of([]))


if __name__ == "__main__":
    unittest.main()

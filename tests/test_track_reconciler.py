import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from track_reconciler import TrackReconciler  # noqa: E402
from trip_models import LocationPoint  # noqa: E402

T0 = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)


def _pt(lat, lng, seconds=None, speed=None):
    ts = T0 + timedelta(seconds=seconds) if seconds is not None else None
    return LocationPoint(lat=lat, lng=lng, timestamp=ts, speed=speed)


def test_malformed_payloads_are_dropped():
    rec = TrackReconciler()
    assert not rec.append({"lat": 12.9}).accepted
    assert not rec.append({"lat": "north", "lng": 80.1}).accepted
    assert not rec.append({"lat": 95, "lng": 80.1}).accepted
    assert len(rec) == 0
    assert rec.current_location is None
    assert rec.dropped_malformed == 3


def test_payload_mapping_is_parsed():
    rec = TrackReconciler()
    result = rec.append({"lat": "12.9", "lng": 80.1, "timestamp": "2024-01-01T06:00:00Z", "speed": 4})
    assert result.accepted
    point = rec.current_location
    assert point.lat == 12.9
    assert point.timestamp == T0
    assert point.speed == 4.0


def test_equal_timestamp_replaces_last_entry():
    rec = TrackReconciler()
    rec.append(_pt(12.90, 80.10, 0))
    rec.append(_pt(12.91, 80.11, 10))
    result = rec.append(_pt(12.92, 80.12, 10))
    assert result.accepted and result.replaced
    assert len(rec) == 2
    assert rec.history[-1].lat == 12.92
    assert rec.current_location.lat == 12.92


def test_stale_points_are_rejected():
    rec = TrackReconciler()
    rec.append(_pt(12.90, 80.10, 0))
    rec.append(_pt(12.91, 80.11, 60))
    result = rec.append(_pt(12.95, 80.15, 30))
    assert not result.accepted
    assert result.reason == "stale"
    assert [p.lat for p in rec.history] == [12.90, 12.91]
    assert rec.current_location.lat == 12.91
    assert rec.dropped_stale == 1


def test_untimestamped_points_are_always_appended():
    rec = TrackReconciler()
    rec.append(_pt(12.90, 80.10, 60))
    assert rec.append(_pt(12.91, 80.11)).accepted
    assert rec.append(_pt(12.92, 80.12)).accepted
    assert len(rec) == 3
    assert rec.current_location.lat == 12.92


def test_growth_gate_needs_more_than_three_new_points():
    rec = TrackReconciler()
    for i in range(3):
        rec.append(_pt(12.9 + i * 0.001, 80.1, i * 10))
    assert not rec.needs_recompute
    rec.append(_pt(12.95, 80.1, 40))
    assert rec.needs_recompute
    rec.mark_computed()
    assert rec.last_computed_count == 4
    assert not rec.needs_recompute
    assert rec.pending_points == 0


def test_seed_counts_accepted_points():
    rec = TrackReconciler()
    accepted = rec.seed([
        {"lat": 12.9, "lng": 80.1, "timestamp": 1_704_088_800_000},
        {"lat": None, "lng": 80.1},
        {"lat": 12.91, "lng": 80.11, "timestamp": 1_704_088_860_000},
    ])
    assert accepted == 2
    assert len(rec) == 2


def test_history_is_a_copy():
    rec = TrackReconciler()
    rec.append(_pt(12.9, 80.1, 0))
    rec.history.clear()
    assert len(rec) == 1


def test_redelivered_fix_after_untimed_point_replaces_in_place():
    rec = TrackReconciler()
    rec.append(_pt(12.90, 80.10, 0))
    rec.append(_pt(12.91, 80.11, 60))
    rec.append(_pt(12.92, 80.12))
    result = rec.append(_pt(12.915, 80.115, 60))
    assert result.accepted and result.replaced
    assert len(rec) == 3
    assert [p.lat for p in rec.history] == [12.90, 12.915, 12.92]
    assert rec.current_location.lat == 12.92
    assert rec.replaced == 1

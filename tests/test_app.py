import asyncio
import sys
from pathlib import Path

from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import SESSION_SUBS, SESSIONS, app, close_session, stream_trip  # noqa: E402
from trip_session import TripSession  # noqa: E402

HISTORY = [
    {"lat": 12.9000, "lng": 80.1000, "timestamp": "2024-01-01T06:00:00Z", "speed": 0},
    {"lat": 12.9100, "lng": 80.1100, "timestamp": "2024-01-01T06:10:00Z", "speed": 12.5},
]


def test_health():
    with TestClient(app) as client:
        resp = client.get("/v1/health")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True


def test_unknown_trip_is_404():
    with TestClient(app) as client:
        assert client.get("/v1/trips/nope/session").status_code == 404
        assert client.post("/v1/trips/nope/locations", json={"lat": 1, "lng": 2}).status_code == 404
        assert client.post("/v1/trips/nope/viewport/drag").status_code == 404


def test_open_session_seeds_history_and_is_idempotent():
    with TestClient(app) as client:
        resp = client.post("/v1/trips/t-100/session", json={"status": "in_transit", "history": HISTORY})
        assert resp.status_code == 200
        snap = resp.json()
        assert snap["phase"] == "active"
        assert snap["points"] == 2
        assert snap["stats"]["travel_time"] == "10m"
        assert snap["camera"]["kind"] == "fit_bounds"

        again = client.post("/v1/trips/t-100/session", json={"status": "assigned"})
        assert again.json()["phase"] == "active"
        assert client.get("/v1/trips/t-100/session").json()["points"] == 2


def test_open_session_rejects_bad_payloads():
    with TestClient(app) as client:
        assert client.post("/v1/trips/t-101/session", json={"history": "nope"}).status_code == 400
        assert client.post("/v1/trips/t-101/session", json={"pickup": "Chennai"}).status_code == 400
        assert "t-101" not in SESSIONS


def test_post_locations_reports_outcomes():
    with TestClient(app) as client:
        client.post("/v1/trips/t-200/session", json={"status": "in_transit"})
        resp = client.post("/v1/trips/t-200/locations", json=[
            {"lat": 12.90, "lng": 80.10, "timestamp": "2024-01-01T06:00:00Z"},
            {"lat": 12.91, "lng": 80.11, "timestamp": "2024-01-01T06:01:00Z"},
            {"lat": 12.92, "lng": 80.12, "timestamp": "2024-01-01T06:01:00Z"},
            {"lat": 12.95, "lng": 80.15, "timestamp": "2024-01-01T05:59:00Z"},
            {"lng": 80.15},
        ])
        assert resp.status_code == 200
        body = resp.json()
        assert body["accepted"] == 3
        assert body["replaced"] == 1
        assert body["rejected"] == {"stale": 1, "malformed": 1}
        assert body["points"] == 2

        single = client.post("/v1/trips/t-200/locations", json={"lat": 12.93, "lng": 80.13})
        assert single.json()["points"] == 3

        assert client.post("/v1/trips/t-200/locations", json="junk").status_code == 400


def test_status_changes_phase():
    with TestClient(app) as client:
        client.post("/v1/trips/t-300/session", json={"status": "trip_accepted"})
        assert client.post("/v1/trips/t-300/status", json={"status": ""}).status_code == 400
        resp = client.post("/v1/trips/t-300/status", json={"status": "in_transit"})
        assert resp.json()["phase"] == "active"
        resp = client.post("/v1/trips/t-300/status", json={"status": "delivered"})
        assert resp.json()["phase"] == "post"


def test_viewport_drag_and_recenter():
    with TestClient(app) as client:
        client.post("/v1/trips/t-400/session", json={"status": "in_transit", "history": HISTORY})
        drag = client.post("/v1/trips/t-400/viewport/drag")
        assert drag.json()["mode"] == "user_controlled"
        recenter = client.post("/v1/trips/t-400/viewport/recenter").json()
        assert recenter["viewport"]["mode"] == "auto_fit"
        assert recenter["camera"]["kind"] == "fly_to"
        assert recenter["camera"]["point"] == [12.91, 80.11]


def test_route_retry_without_endpoints_fails_cleanly():
    with TestClient(app) as client:
        client.post("/v1/trips/t-500/session", json={"status": "in_transit"})
        resp = client.post("/v1/trips/t-500/route/retry")
        assert resp.status_code == 200
        body = resp.json()
        assert body["retried"] is True
        assert body["route"]["stage"] == "failed"
        assert body["route"]["status_text"] == "Route loading failed"


def test_delete_session():
    with TestClient(app) as client:
        client.post("/v1/trips/t-600/session", json={"status": "in_transit"})
        assert client.delete("/v1/trips/t-600/session").json()["ok"] is True
        assert client.get("/v1/trips/t-600/session").status_code == 404


def test_delete_session_releases_stream_subscribers():
    with TestClient(app) as client:
        client.post("/v1/trips/t-601/session", json={"status": "in_transit"})
        q = asyncio.Queue(maxsize=1)
        q.put_nowait("data: {}\n\n")
        SESSION_SUBS["t-601"] = {q}
        assert client.delete("/v1/trips/t-601/session").status_code == 200
        assert "t-601" not in SESSION_SUBS
        assert q.get_nowait() is None


def test_open_stream_ends_when_session_closes():
    async def main():
        SESSIONS["t-602"] = TripSession("t-602", status="in_transit")
        response = await stream_trip("t-602")
        stream = response.body_iterator
        first = await stream.__anext__()
        assert "t-602" in SESSION_SUBS
        await close_session("t-602")
        rest = [chunk async for chunk in stream]
        return first, rest

    first, rest = asyncio.run(main())
    assert first.startswith("data: ")
    assert '"trip_id": "t-602"' in first
    assert rest == []
    assert "t-602" not in SESSION_SUBS
    assert "t-602" not in SESSIONS

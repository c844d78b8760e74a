"""
Trip Tracking Engine: HTTP + SSE surface over per-trip sessions

Purpose
=======
Follow an in-progress delivery trip: ingest GPS fixes, keep an ordered track,
compute distance/speed stats and dwell stops, resolve a planned route between
pickup and delivery, and tell the dashboard where to point the camera.

Key features
------------
- One TripSession per trip id, fed by the websocket stream (STREAM_WS_URL) or
  by POSTed fixes.
- Planned route via Nominatim geocoding + OSRM, with straight-line fallback.
- REST endpoints + Server-Sent Events (SSE) stream of session snapshots.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from typing import Any, Dict, List, Optional, Set

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from geocoding import NominatimGeocoder
from location_stream import STREAM_RECONNECT_S, STREAM_WS_URL, WebSocketTransport
from routing import OSRMRouter
from trip_models import Endpoint
from trip_session import TripSession

# ---------------------------
# Config
# ---------------------------
SSE_QUEUE_MAXSIZE = int(os.getenv("SSE_QUEUE_MAXSIZE", "10"))
SSE_KEEPALIVE_S = float(os.getenv("SSE_KEEPALIVE_S", "15"))

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Trip Tracking Engine")

SESSIONS: Dict[str, TripSession] = {}
SESSION_SUBS: Dict[str, Set[asyncio.Queue]] = {}


@app.on_event("startup")
async def init_clients() -> None:
    app.state.geocoder = NominatimGeocoder.from_env()
    app.state.router = OSRMRouter.from_env()
    if STREAM_WS_URL:
        app.state.transport = WebSocketTransport(STREAM_WS_URL, STREAM_RECONNECT_S)
    else:
        print("[app] STREAM_WS_URL not set; live stream disabled, fixes must be POSTed")
        app.state.transport = None


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    for trip_id in list(SESSIONS):
        session = SESSIONS.pop(trip_id)
        await session.dispose()
    for trip_id in list(SESSION_SUBS):
        close_subscribers(trip_id)
    transport = getattr(app.state, "transport", None)
    if transport is not None:
        await transport.close()
    for name in ("geocoder", "router"):
        client = getattr(app.state, name, None)
        if client is not None:
            await client.aclose()


def broadcast_snapshot(trip_id: str, snapshot: Dict[str, Any]) -> None:
    subs = SESSION_SUBS.get(trip_id)
    if not subs:
        return
    encoded = f"data: {json.dumps(snapshot)}\n\n"
    for q in list(subs):
        try:
            q.put_nowait(encoded)
        except asyncio.QueueFull:
            pass  # slow client, drop this update


def close_subscribers(trip_id: str) -> None:
    """End every open stream of a trip; each one reads None and returns."""
    for q in SESSION_SUBS.pop(trip_id, set()):
        try:
            q.put_nowait(None)
        except asyncio.QueueFull:
            # make room, the stream only needs to see the sentinel
            q.get_nowait()
            q.put_nowait(None)


def _get_session(trip_id: str) -> TripSession:
    session = SESSIONS.get(trip_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Trip session not found")
    return session


def _parse_endpoint(payload: Dict[str, Any], key: str) -> Optional[Endpoint]:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail=f"invalid {key}; expected an object")
    return Endpoint.from_payload(raw)


def _location_items(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        points = payload.get("points")
        if points is None:
            return [payload]
        if isinstance(points, list):
            return points
    raise HTTPException(status_code=400, detail="invalid payload; expected a fix, a list of fixes or {points: [...]}")


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    return {
        "ok": True,
        "ts": int(time.time() * 1000),
        "sessions": len(SESSIONS),
        "stream_enabled": getattr(app.state, "transport", None) is not None,
    }


# ---------------------------
# Trip sessions
# ---------------------------
@app.post("/v1/trips/{trip_id}/session")
async def open_session(trip_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    existing = SESSIONS.get(trip_id)
    if existing is not None:
        return existing.snapshot()

    payload = payload or {}
    status = payload.get("status")
    if status is not None and not isinstance(status, str):
        raise HTTPException(status_code=400, detail="invalid status")
    history = payload.get("history") or []
    if not isinstance(history, list):
        raise HTTPException(status_code=400, detail="invalid history; expected a list")
    pickup = _parse_endpoint(payload, "pickup")
    delivery = _parse_endpoint(payload, "delivery")

    session = TripSession(
        trip_id,
        status=status,
        pickup=pickup,
        delivery=delivery,
        geocoder=getattr(app.state, "geocoder", None),
        router=getattr(app.state, "router", None),
        transport=getattr(app.state, "transport", None),
        refresh_callback=lambda: broadcast_snapshot(trip_id, session.snapshot()),
    )
    SESSIONS[trip_id] = session
    if history:
        accepted = session.seed_history(history)
        print(f"[app] trip={trip_id} seeded {accepted}/{len(history)} history points")
    session.add_listener(lambda snap: broadcast_snapshot(trip_id, snap))
    await session.start()
    return session.snapshot()


@app.get("/v1/trips/{trip_id}/session")
async def get_session(trip_id: str):
    return _get_session(trip_id).snapshot()


@app.delete("/v1/trips/{trip_id}/session")
async def close_session(trip_id: str):
    session = _get_session(trip_id)
    SESSIONS.pop(trip_id, None)
    await session.dispose()
    close_subscribers(trip_id)
    return {"ok": True, "trip_id": trip_id}


@app.post("/v1/trips/{trip_id}/locations")
async def post_locations(trip_id: str, payload: Any = Body(...)):
    session = _get_session(trip_id)
    items = _location_items(payload)
    accepted = replaced = 0
    rejected: Dict[str, int] = {}
    for item in items:
        result = session.handle_location(item)
        if result.accepted:
            accepted += 1
            if result.replaced:
                replaced += 1
        else:
            reason = result.reason or "rejected"
            rejected[reason] = rejected.get(reason, 0) + 1
    return {
        "accepted": accepted,
        "replaced": replaced,
        "rejected": rejected,
        "points": len(session.reconciler),
    }


@app.post("/v1/trips/{trip_id}/status")
async def post_status(trip_id: str, payload: Dict[str, Any] = Body(...)):
    session = _get_session(trip_id)
    status = payload.get("status")
    if not isinstance(status, str) or not status.strip():
        raise HTTPException(status_code=400, detail="status is required")
    phase = await session.set_status(status.strip())
    return {"trip_id": trip_id, "status": session.status, "phase": phase.value}


# ---------------------------
# Viewport & route actions
# ---------------------------
@app.post("/v1/trips/{trip_id}/viewport/drag")
async def viewport_drag(trip_id: str):
    session = _get_session(trip_id)
    session.user_drag()
    return session.viewport.to_dict()


@app.post("/v1/trips/{trip_id}/viewport/recenter")
async def viewport_recenter(trip_id: str):
    session = _get_session(trip_id)
    command = session.recenter()
    return {
        "camera": command.to_dict() if command else None,
        "viewport": session.viewport.to_dict(),
    }


@app.post("/v1/trips/{trip_id}/route/retry")
async def route_retry(trip_id: str):
    session = _get_session(trip_id)
    if session.resolver is None:
        raise HTTPException(status_code=400, detail="route resolution not available for this trip")
    retried = await session.retry_route()
    return {"retried": retried, "route": session.resolver.to_dict()}


# ---------------------------
# SSE: trip snapshots
# ---------------------------
@app.get("/v1/stream/trips/{trip_id}")
async def stream_trip(trip_id: str):
    session = _get_session(trip_id)

    async def gen():
        if not session.alive:
            return
        q: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_MAXSIZE)
        SESSION_SUBS.setdefault(trip_id, set()).add(q)
        try:
            # current state first, then updates as the session publishes them
            yield f"data: {json.dumps(session.snapshot())}\n\n"
            while True:
                try:
                    encoded = await asyncio.wait_for(q.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if encoded is None:
                    return  # session closed
                yield encoded
        finally:
            subs = SESSION_SUBS.get(trip_id)
            if subs is not None and q in subs:
                subs.discard(q)
                if not subs:
                    SESSION_SUBS.pop(trip_id, None)

    return StreamingResponse(gen(), media_type="text/event-stream")

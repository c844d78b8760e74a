"""Live location subscription for a single trip.

``LocationStreamClient`` owns the per-trip channel subscription and the
connection state shown on the dashboard. The actual pub/sub connection sits
behind ``StreamTransport`` so the client can be driven by the bundled
websocket transport or by anything else that delivers ``(event, data)``
pairs for a channel.
"""
from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from trip_models import ConnectionState, LocationPoint, MalformedPoint, TransportError

STREAM_WS_URL = os.getenv("STREAM_WS_URL", "").strip()
STREAM_RECONNECT_S = float(os.getenv("STREAM_RECONNECT_S", "5"))

LOCATION_EVENT = "location-update"
STATUS_EVENT = "status-change"

EventCallback = Callable[[str, Any], None]
StateCallback = Callable[[ConnectionState], None]


def channel_for_trip(trip_id: str) -> str:
    return f"load-{trip_id}"


class StreamTransport(ABC):
    """Pub/sub connection that delivers events per channel."""

    @abstractmethod
    async def subscribe(self, channel: str, on_event: EventCallback, on_state: StateCallback) -> None:
        """Start delivering events for ``channel``.

        Raises TransportError when the subscription cannot be set up at all.
        """
        raise NotImplementedError

    @abstractmethod
    async def unsubscribe(self, channel: str) -> None:
        raise NotImplementedError


class WebSocketTransport(StreamTransport):
    """JSON pub/sub over one websocket, reconnecting with a fixed backoff.

    Client frames: ``{"event": "subscribe"|"unsubscribe", "channel": ...}``.
    Server frames: ``{"channel": ..., "event": ..., "data": {...}}``. ``data``
    may also arrive as a JSON encoded string.
    """

    def __init__(self, url: str = STREAM_WS_URL, reconnect_s: float = STREAM_RECONNECT_S) -> None:
        self.url = url
        self.reconnect_s = reconnect_s
        self._channels: Dict[str, Tuple[EventCallback, StateCallback]] = {}
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self.state = ConnectionState.DISCONNECTED

    @classmethod
    def from_env(cls) -> "WebSocketTransport":
        if not STREAM_WS_URL:
            raise RuntimeError("Missing STREAM_WS_URL environment variable")
        return cls(STREAM_WS_URL, STREAM_RECONNECT_S)

    async def subscribe(self, channel: str, on_event: EventCallback, on_state: StateCallback) -> None:
        if not self.url:
            raise TransportError("no stream url configured")
        self._channels[channel] = (on_event, on_state)
        if self._ws is not None:
            on_state(self.state)
            await self._send({"event": "subscribe", "channel": channel})
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def unsubscribe(self, channel: str) -> None:
        if self._channels.pop(channel, None) is None:
            return
        if self._ws is not None:
            await self._send({"event": "unsubscribe", "channel": channel})
        if not self._channels:
            await self.close()

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self.state = ConnectionState.DISCONNECTED

    async def _send(self, frame: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(frame))
        except Exception as e:
            # the run loop notices the dead socket and resubscribes on reconnect
            print(f"[stream] send failed for {frame.get('event')}: {e}")

    def _set_state(self, state: ConnectionState) -> None:
        self.state = state
        for _, on_state in list(self._channels.values()):
            on_state(state)

    async def _run(self) -> None:
        import websockets

        while self._channels:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self._set_state(ConnectionState.CONNECTED)
                    print(f"[stream] websocket connected ({len(self._channels)} channels)")
                    for channel in list(self._channels):
                        await ws.send(json.dumps({"event": "subscribe", "channel": channel}))
                    async for message in ws:
                        self._handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                print(f"[stream] websocket error: {e}, reconnecting in {self.reconnect_s}s")
            finally:
                self._ws = None
            if not self._channels:
                break
            self._set_state(ConnectionState.DISCONNECTED)
            await asyncio.sleep(self.reconnect_s)
        self.state = ConnectionState.DISCONNECTED

    def _handle_message(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            print("[stream] ignoring non-JSON frame")
            return
        if not isinstance(msg, dict):
            return
        target = self._channels.get(msg.get("channel"))
        if target is None:
            return
        data = msg.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                pass
        on_event, _ = target
        on_event(str(msg.get("event") or ""), data)


class LocationStreamClient:
    """Subscribes to ``load-{trip_id}`` while a trip is active.

    Location payloads are parsed into ``LocationPoint`` before they reach
    ``on_location``; malformed ones are dropped here. Reconnection is the
    transport's business, this client only mirrors the state it reports.
    """

    def __init__(
        self,
        transport: StreamTransport,
        on_location: Optional[Callable[[LocationPoint], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
        on_status_change: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.transport = transport
        self.on_location = on_location
        self.on_state_change = on_state_change
        self.on_status_change = on_status_change
        self.state = ConnectionState.DISCONNECTED
        self.trip_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self.update_count = 0
        self.last_update_at: Optional[datetime] = None
        self.dropped_malformed = 0

    @property
    def channel(self) -> Optional[str]:
        if self.trip_id is None:
            return None
        return channel_for_trip(self.trip_id)

    @property
    def subscribed(self) -> bool:
        return self.trip_id is not None

    async def enable(self, trip_id: str, active: bool) -> None:
        if not active:
            await self.disable()
            return
        if self.trip_id == trip_id:
            return
        if self.trip_id is not None:
            await self.disable()

        self.trip_id = trip_id
        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)
        channel = channel_for_trip(trip_id)
        try:
            await self.transport.subscribe(channel, self._handle_event, self._handle_state)
        except TransportError as exc:
            print(f"[stream] subscribe to {channel} failed: {exc}")
            self.trip_id = None
            self.last_error = str(exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return
        print(f"[stream] subscribed to {channel}")

    async def disable(self) -> None:
        channel = self.channel
        if channel is None:
            return
        self.trip_id = None
        try:
            await self.transport.unsubscribe(channel)
        except TransportError as exc:
            print(f"[stream] unsubscribe from {channel} failed: {exc}")
            self.last_error = str(exc)
        print(f"[stream] unsubscribed from {channel}")
        self._set_state(ConnectionState.DISCONNECTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "channel": self.channel,
            "last_error": self.last_error,
            "update_count": self.update_count,
            "last_update_at": self.last_update_at.isoformat() if self.last_update_at else None,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _handle_state(self, state: ConnectionState) -> None:
        if self.trip_id is None:
            return
        self._set_state(state)

    def _handle_event(self, event: str, data: Any) -> None:
        if self.trip_id is None:
            return
        if event == LOCATION_EVENT:
            try:
                point = LocationPoint.from_payload(data)
            except MalformedPoint as exc:
                self.dropped_malformed += 1
                print(f"[stream] dropping malformed location: {exc}")
                return
            self.update_count += 1
            self.last_update_at = datetime.now(timezone.utc)
            if self.on_location is not None:
                self.on_location(point)
        elif event == STATUS_EVENT:
            if not isinstance(data, dict):
                return
            status = data.get("newStatus") or data.get("status")
            if status and self.on_status_change is not None:
                self.on_status_change(str(status))


__all__ = [
    "LOCATION_EVENT",
    "LocationStreamClient",
    "STATUS_EVENT",
    "STREAM_RECONNECT_S",
    "STREAM_WS_URL",
    "StreamTransport",
    "WebSocketTransport",
    "channel_for_trip",
]

"""WebSocket event feed for UIs, and a position source fed by its clients."""

import asyncio
import json
import threading
import time
from typing import Callable, Optional

import websockets

from .config import CONFIG
from .gps import PositionSource
from .models import PositionSample, now_ms

GEOFENCE_ENTER = "geofence_enter"
GEOFENCE_EXIT = "geofence_exit"
PLAYBACK_STATE = "playback_state"
PRELOAD_PROGRESS = "preload_progress"
SYNC_STATUS = "sync_status"
SIGNAL_ERROR = "signal_error"
LOG = "log"


def parse_location_message(message: str) -> Optional[PositionSample]:
    """PositionSample from a {"type": "location", "data": {...}} message"""
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") != "location":
        return None
    loc = data.get("data") or {}
    try:
        return PositionSample(
            lat=float(loc["lat"]),
            lng=float(loc["lng"] if "lng" in loc else loc["lon"]),
            timestamp_ms=int(loc.get("timestamp_ms") or now_ms()),
            accuracy_m=loc.get("accuracy"),
        )
    except (KeyError, TypeError, ValueError):
        return None


class EventServer:
    """Broadcasts {"type", "data"} messages to every connected client.

    Runs on its own thread and event loop; send_event may be called from
    any thread.
    """

    def __init__(self, host: str = "localhost", port: Optional[int] = None):
        self.host = host
        self.port = port or CONFIG["event_server_port"]
        self.ws_loop: Optional[asyncio.AbstractEventLoop] = None
        self.ws_thread: Optional[threading.Thread] = None
        self.connected_clients: set = set()
        self.location_listener: Optional[Callable[[PositionSample], None]] = None
        self._running = False

    def start(self):
        """Start the WebSocket server in a background thread"""
        self._running = True
        self.ws_thread = threading.Thread(target=self._run_ws_server, name="event-server", daemon=True)
        self.ws_thread.start()
        # Give the server time to bind
        time.sleep(0.5)
        print(f"Event feed available at: ws://{self.host}:{self.port}")

    def _run_ws_server(self):
        self.ws_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.ws_loop)

        async def main():
            try:
                async with websockets.serve(self._handler, self.host, self.port):
                    while self._running:
                        await asyncio.sleep(0.1)
            except OSError as e:
                print(f"WebSocket server error: {e}")

        self.ws_loop.run_until_complete(main())
        self.ws_loop.close()

    async def _handler(self, websocket):
        self.connected_clients.add(websocket)
        try:
            async for message in websocket:
                sample = parse_location_message(message)
                if sample and self.location_listener:
                    self.location_listener(sample)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.connected_clients.discard(websocket)

    def send_event(self, msg_type: str, data: dict):
        """Send an event to all connected clients"""
        if not self.connected_clients or not self.ws_loop:
            return

        message = json.dumps({"type": msg_type, "data": data}, default=str)

        async def send_to_all():
            for client in list(self.connected_clients):
                try:
                    await client.send(message)
                except websockets.ConnectionClosed:
                    self.connected_clients.discard(client)

        try:
            asyncio.run_coroutine_threadsafe(send_to_all(), self.ws_loop)
        except RuntimeError:
            pass  # loop already stopped

    def send_log(self, message: str, data: Optional[dict] = None):
        """Logger callback"""
        self.send_event(LOG, {"message": message, "data": data})

    def stop(self):
        self._running = False
        if self.ws_thread:
            self.ws_thread.join(timeout=2)
            self.ws_thread = None


class WebSocketPositionSource(PositionSource):
    """Fixes sent by event feed clients (e.g. a map click or a phone)"""

    def __init__(self, server: EventServer):
        super().__init__()
        self.server = server
        self.last_sample: Optional[PositionSample] = None

    def subscribe(self, on_fix, on_error=None):
        super().subscribe(on_fix, on_error)
        self.server.location_listener = self._receive

    def unsubscribe(self):
        self.server.location_listener = None
        super().unsubscribe()

    def _receive(self, sample: PositionSample):
        self.last_sample = sample
        self._emit(sample)

    def get_status(self) -> str:
        return f"Event feed ({len(self.server.connected_clients)} clients)"

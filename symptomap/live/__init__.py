"""
SymptoMap — Realtime Client

Socket.IO client for the map: forwards server pushes to local subscribers
and keeps the connection alive after the server drops it.

Reconnect policy:
  Only a server-initiated disconnect (python-socketio reports reason
  "server disconnect") triggers a reconnect. Attempts back off 1s, 2s, 4s,
  8s, 16s; a failed attempt schedules the next one. After the fifth,
  subscribers get "connection:failed". A successful connect resets the
  count. The library's own reconnection is disabled so this policy is the
  only one in play.
"""
import time, threading
from typing import Callable, Dict, Set

import socketio
from loguru import logger

from symptomap.config import API_URL, API_TIMEOUT, RECONNECT_MAX_ATTEMPTS, RECONNECT_BASE_DELAY_MS

SERVER_DISCONNECT = socketio.Client.reason.SERVER_DISCONNECT
CONNECTION_FAILED = "connection:failed"

FORWARDED_EVENTS = (
    "outbreaks:initial",
    "outbreak:created", "outbreak:updated", "outbreak:deleted",
    "prediction:ready",
    "system:maintenance", "system:error", "system:metrics",
)


def _default_client():
    return socketio.Client(reconnection=False)


def _thread_timer(delay_ms: float, fn: Callable[[], None]):
    timer = threading.Timer(delay_ms / 1000, fn)
    timer.daemon = True
    timer.start()
    return timer


class WebSocketService:
    def __init__(self, url: str = API_URL, token_store=None,
                 sio_factory: Callable[[], socketio.Client] = _default_client,
                 schedule: Callable[[float, Callable], object] = _thread_timer,
                 max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS,
                 reconnect_delay_ms: int = RECONNECT_BASE_DELAY_MS):
        self.url = url
        self.token_store = token_store
        self.sio_factory = sio_factory
        self.schedule = schedule
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay_ms = reconnect_delay_ms
        self.reconnect_attempts = 0
        self._client = None
        self._pending = None
        self._handlers: Dict[str, Set[Callable]] = {}

    # ============================================================
    # CONNECTION
    # ============================================================
    def connect(self):
        """Open a connection; raises socketio.exceptions.ConnectionError on failure."""
        client = self.sio_factory()
        client.on("connect", self._on_connect)
        client.on("connect_error", self._on_connect_error)
        client.on("disconnect", self._on_disconnect)
        for event in FORWARDED_EVENTS:
            client.on(event, self._forwarder(event))
        self._client = client

        token = self.token_store.get() if self.token_store is not None else None
        client.connect(self.url, transports=["websocket"], auth={"token": token},
                       wait_timeout=API_TIMEOUT)

    def disconnect(self):
        if self._pending is not None and hasattr(self._pending, "cancel"):
            self._pending.cancel()
        self._pending = None
        if self._client is not None:
            client, self._client = self._client, None
            client.disconnect()

    @property
    def is_connected(self) -> bool:
        return bool(self._client is not None and self._client.connected)

    @property
    def connection_id(self):
        return self._client.sid if self._client is not None else None

    def _on_connect(self):
        logger.info("[WS] Connected")
        self.reconnect_attempts = 0

    def _on_connect_error(self, data=None):
        logger.error(f"[WS] Connection error: {data}")

    def _on_disconnect(self, reason=None):
        logger.info(f"[WS] Disconnected: {reason}")
        if reason == SERVER_DISCONNECT:
            self._handle_reconnect()

    def _handle_reconnect(self):
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("[WS] Max reconnection attempts reached")
            self._dispatch(CONNECTION_FAILED, "Max reconnection attempts reached")
            return
        self.reconnect_attempts += 1
        delay = self.reconnect_delay_ms * 2 ** (self.reconnect_attempts - 1)
        logger.info(f"[WS] Reconnecting in {delay}ms "
                    f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})")
        self._pending = self.schedule(delay, self._attempt_reconnect)

    def _attempt_reconnect(self):
        self._pending = None
        try:
            self.connect()
        except Exception as e:
            self._client = None
            logger.error(f"[WS] Reconnection failed: {e}")
            self._handle_reconnect()

    # ============================================================
    # SUBSCRIBERS
    # ============================================================
    def on(self, event: str, handler: Callable):
        self._handlers.setdefault(event, set()).add(handler)

    def off(self, event: str, handler: Callable):
        self._handlers.get(event, set()).discard(handler)

    def _forwarder(self, event: str):
        def forward(data=None):
            self._dispatch(event, data)
        return forward

    def _dispatch(self, event: str, data=None):
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(data)
            except Exception as e:
                logger.error(f"[WS] Error in event handler for {event}: {e}")

    # ============================================================
    # OUTGOING
    # ============================================================
    def _emit(self, event: str, data=None):
        if self._client is None:
            return
        if data is None:
            self._client.emit(event)
        else:
            self._client.emit(event, data)

    def subscribe_to_map(self, bounds: dict):
        self._emit("map:subscribe", bounds)

    def unsubscribe_from_map(self):
        self._emit("map:unsubscribe")

    def request_prediction(self, region: dict):
        self._emit("prediction:request", region)

    def ping(self, timeout: float = 5) -> float:
        """Round-trip latency in ms, or -1 when not connected or no ack arrives."""
        if not self.is_connected:
            return -1
        started = time.perf_counter()
        try:
            self._client.call("ping", timeout=timeout)
        except socketio.exceptions.TimeoutError:
            return -1
        return (time.perf_counter() - started) * 1000

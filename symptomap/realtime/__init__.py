"""
SymptoMap — Realtime (Socket.IO)

Architecture:
  One python-socketio AsyncServer mounted next to the FastAPI app. Each
  connection is recorded in `websocket_connections` with the regions it has
  subscribed to; outbreak changes are pushed only to connections whose
  regions contain the outbreak.

Events (client → server):
  map:subscribe(bounds)      join room region:N:S:E:W, get outbreaks:initial
  map:unsubscribe            leave every region room
  prediction:request(region) 7-day forecast, answered with prediction:ready
  ping                       acknowledged; refreshes lastPingAt

Events (server → client):
  outbreak:created|updated|deleted, system:maintenance|error, system:metrics
"""
import asyncio
from datetime import timedelta

import socketio
from loguru import logger

from symptomap.config import CORS_ORIGINS, WS_METRICS_INTERVAL_SECONDS, WS_STALE_MINUTES
from symptomap.db import get_db, save_db, now_iso, now_utc, parse_ts
from symptomap.schemas import GeographicBounds
from symptomap.outbreaks import list_outbreaks, outbreak_stats, in_region
from symptomap.predictions import prediction_service

INITIAL_OUTBREAK_DAYS = 7
PREDICTION_HORIZON_DAYS = 7

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*" if CORS_ORIGINS == ["*"] else CORS_ORIGINS,
    logger=False, engineio_logger=False,
)


def room_for(bounds: dict) -> str:
    return f"region:{bounds['north']}:{bounds['south']}:{bounds['east']}:{bounds['west']}"


# ============================================================
# CONNECTION REGISTRY
# ============================================================
def _connection(db: dict, sid: str) -> dict:
    return next((c for c in db["websocket_connections"] if c["connectionId"] == sid), None)


def record_connection(sid: str, ip_address: str = None, user_agent: str = None) -> dict:
    db = get_db()
    conn = _connection(db, sid)
    ts = now_iso()
    if conn is None:
        conn = {"connectionId": sid, "subscribedRegions": []}
        db["websocket_connections"].append(conn)
    conn.update({"ipAddress": ip_address, "userAgent": user_agent, "connectedAt": ts,
                 "lastPingAt": ts, "disconnectedAt": None})
    save_db(db)
    return conn


def update_connection(sid: str, **fields):
    db = get_db()
    conn = _connection(db, sid)
    if conn is None:
        return None
    conn.update(fields)
    save_db(db)
    return conn


def live_connections() -> list:
    return [c for c in get_db().get("websocket_connections", []) if not c.get("disconnectedAt")]


def expire_stale_connections(minutes: int = WS_STALE_MINUTES) -> int:
    """Mark connections silent for `minutes` as disconnected."""
    cutoff = now_utc() - timedelta(minutes=minutes)
    db = get_db()
    stale = [c for c in db["websocket_connections"]
             if not c.get("disconnectedAt") and parse_ts(c.get("lastPingAt") or c["connectedAt"]) < cutoff]
    for c in stale:
        c["disconnectedAt"] = now_iso()
    if stale:
        save_db(db)
    return len(stale)


# ============================================================
# EVENT HANDLERS
# ============================================================
async def on_connect(sid, environ, auth=None):
    environ = environ or {}
    record_connection(sid, environ.get("REMOTE_ADDR"), environ.get("HTTP_USER_AGENT"))
    logger.info(f"[WS] Client connected: {sid}")


async def on_map_subscribe(sid, bounds):
    try:
        region = GeographicBounds(**bounds).model_dump()
        update_connection(sid, subscribedRegions=[region])
        await sio.enter_room(sid, room_for(region))
        outbreaks = list_outbreaks(lat_min=region["south"], lat_max=region["north"],
                                   lng_min=region["west"], lng_max=region["east"],
                                   days=INITIAL_OUTBREAK_DAYS)
        await sio.emit("outbreaks:initial", outbreaks, to=sid)
        logger.info(f"[WS] {sid} subscribed to {room_for(region)}, sent {len(outbreaks)} outbreaks")
    except Exception as e:
        logger.error(f"[WS] Map subscription error for {sid}: {e}")
        await sio.emit("error", "Failed to subscribe to map region", to=sid)


async def on_map_unsubscribe(sid, data=None):
    update_connection(sid, subscribedRegions=[])
    for room in [r for r in sio.rooms(sid) if str(r).startswith("region:")]:
        await sio.leave_room(sid, room)
    logger.info(f"[WS] {sid} unsubscribed from map")


async def on_prediction_request(sid, region):
    try:
        bounds = GeographicBounds(**region).model_dump()
        prediction = prediction_service.generate_prediction(bounds, PREDICTION_HORIZON_DAYS)
        await sio.emit("prediction:ready", prediction, to=sid)
        logger.info(f"[WS] Prediction {prediction['id']} sent to {sid}")
    except Exception as e:
        logger.error(f"[WS] Prediction request error for {sid}: {e}")
        await sio.emit("error", "Failed to generate prediction", to=sid)


async def on_ping(sid, data=None):
    update_connection(sid, lastPingAt=now_iso())
    return "pong"


async def on_disconnect(sid, reason=None):
    update_connection(sid, disconnectedAt=now_iso())
    logger.info(f"[WS] Client disconnected: {sid}, reason: {reason}")


sio.on("connect", on_connect)
sio.on("map:subscribe", on_map_subscribe)
sio.on("map:unsubscribe", on_map_unsubscribe)
sio.on("prediction:request", on_prediction_request)
sio.on("ping", on_ping)
sio.on("disconnect", on_disconnect)


# ============================================================
# BROADCASTS
# ============================================================
async def broadcast_outbreak_change(outbreak: dict, action: str) -> int:
    """Push outbreak:<action> to live connections subscribed to its region."""
    sent = 0
    for conn in live_connections():
        if any(in_region(outbreak, r) for r in conn.get("subscribedRegions", [])):
            try:
                await sio.emit(f"outbreak:{action}", outbreak, to=conn["connectionId"])
                sent += 1
            except Exception as e:
                logger.error(f"[WS] Failed to push outbreak:{action} to {conn['connectionId']}: {e}")
    return sent


async def notify_system(kind: str, message: str, details: dict = None):
    if kind not in ("maintenance", "error"):
        raise ValueError(f"Unknown system notice: {kind}")
    await sio.emit(f"system:{kind}", {"message": message, "details": details or {},
                                      "timestamp": now_iso()})


def collect_metrics() -> dict:
    return {
        "timestamp": now_iso(),
        "active_connections": len(live_connections()),
        "total_outbreaks": outbreak_stats(days_back=1)["totalOutbreaks"],
    }


async def metrics_loop(interval: float = WS_METRICS_INTERVAL_SECONDS):
    """Every `interval` seconds: expire stale connections, emit system:metrics."""
    while True:
        await asyncio.sleep(interval)
        try:
            expired = expire_stale_connections()
            if expired:
                logger.info(f"[WS] Expired {expired} stale connections")
            await sio.emit("system:metrics", collect_metrics())
        except Exception as e:
            logger.error(f"[WS] Failed to broadcast system metrics: {e}")

"""
SymptoMap — Map State

Client-side state behind the outbreak map: the outbreak and prediction lists,
filters, the time window and time-lapse playback, the selected cluster,
annotations, and loading/error flags. Listeners registered with
`subscribe()` are called with the store after every change.

Time-lapse: one second of wall time at speed 1 advances the map clock by one
day. Reaching the end of the window clamps the clock and pauses playback.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from loguru import logger

from symptomap.config import DEFAULT_TIME_WINDOW_DAYS, PLAYBACK_SPEEDS, ANNOTATION_MAX_CHARS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def make_time_window(days: int = DEFAULT_TIME_WINDOW_DAYS, end: datetime = None) -> dict:
    end = end or _utcnow()
    return {"start": end - timedelta(days=days), "end": end, "days": days}


class MapStore:
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self._listeners = []
        self.outbreaks: List[dict] = []
        self.predictions: List[dict] = []
        self.annotations: List[dict] = []
        self.time_window = make_time_window(end=clock())
        self.filters = self._default_filters()
        self.current_time: datetime = self.time_window["start"]
        self.is_playing = False
        self.playback_speed = 1
        self.selected_cluster: Optional[dict] = None
        self.is_loading = False
        self.error: Optional[str] = None
        self.update_count = 0
        self.last_update = clock()

    def _default_filters(self) -> dict:
        return {"diseaseTypes": [], "severityLevels": [], "timeWindow": dict(self.time_window),
                "bounds": None}

    # ============================================================
    # CHANGE NOTIFICATION
    # ============================================================
    def subscribe(self, listener: Callable[["MapStore"], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _changed(self, counted: bool = False):
        if counted:
            self.update_count += 1
            self.last_update = self.clock()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"[MAP] Store listener failed: {e}")

    # ============================================================
    # OUTBREAKS & PREDICTIONS
    # ============================================================
    def set_outbreaks(self, outbreaks: List[dict]):
        self.outbreaks = list(outbreaks or [])
        self._changed()

    def add_outbreak(self, outbreak: dict):
        self.outbreaks = self.outbreaks + [outbreak]
        self._changed(counted=True)

    def update_outbreak(self, outbreak: dict):
        self.outbreaks = [outbreak if o["id"] == outbreak["id"] else o for o in self.outbreaks]
        self._changed(counted=True)

    def remove_outbreak(self, outbreak_id: str):
        self.outbreaks = [o for o in self.outbreaks if o["id"] != outbreak_id]
        if self.selected_cluster and self.selected_cluster.get("id") == outbreak_id:
            self.selected_cluster = None
        self._changed(counted=True)

    def set_predictions(self, predictions: List[dict]):
        self.predictions = list(predictions or [])
        self._changed()

    def add_prediction(self, prediction: dict):
        self.predictions = [p for p in self.predictions if p.get("id") != prediction.get("id")] + [prediction]
        self._changed(counted=True)

    # ============================================================
    # FILTERS
    # ============================================================
    def set_filters(self, filters: dict):
        self.filters = {**self._default_filters(), **filters}
        self._changed()

    def update_filters(self, **updates):
        self.filters = {**self.filters, **updates}
        self._changed()

    def clear_filters(self):
        self.filters = self._default_filters()
        self._changed()

    def filtered_outbreaks(self) -> List[dict]:
        f = self.filters
        window = f.get("timeWindow") or self.time_window
        start, end = _as_datetime(window["start"]), _as_datetime(window["end"])
        bounds = f.get("bounds")
        rows = []
        for o in self.outbreaks:
            if f.get("diseaseTypes") and o["diseaseType"] not in f["diseaseTypes"]:
                continue
            if f.get("severityLevels") and o["severityLevel"] not in f["severityLevels"]:
                continue
            if not start <= _as_datetime(o["lastUpdated"]) <= end:
                continue
            if bounds and not (bounds["south"] <= o["latitude"] <= bounds["north"]
                               and bounds["west"] <= o["longitude"] <= bounds["east"]):
                continue
            rows.append(o)
        return rows

    # ============================================================
    # TIME WINDOW & PLAYBACK
    # ============================================================
    def set_time_window(self, days: int = None, start: datetime = None, end: datetime = None):
        if start is not None and end is not None:
            start, end = _as_datetime(start), _as_datetime(end)
            if start >= end:
                raise ValueError("time window start must be before its end")
            window = {"start": start, "end": end, "days": (end - start).days}
        else:
            window = make_time_window(days or DEFAULT_TIME_WINDOW_DAYS, end=self.clock())
        self.time_window = window
        self.filters = {**self.filters, "timeWindow": dict(window)}
        self.current_time = min(max(self.current_time, window["start"]), window["end"])
        self._changed()

    def set_current_time(self, when: datetime):
        self.current_time = _as_datetime(when)
        self._changed()

    def play(self):
        if self.current_time >= self.time_window["end"]:
            self.current_time = self.time_window["start"]
        self.is_playing = True
        self._changed()

    def pause(self):
        self.is_playing = False
        self._changed()

    def set_playback_speed(self, speed: float):
        if speed not in PLAYBACK_SPEEDS:
            raise ValueError(f"playback speed must be one of {PLAYBACK_SPEEDS}")
        self.playback_speed = speed
        self._changed()

    @property
    def progress(self) -> float:
        total = (self.time_window["end"] - self.time_window["start"]).total_seconds()
        if total <= 0:
            return 1.0
        return (self.current_time - self.time_window["start"]).total_seconds() / total

    def advance(self, elapsed_ms: float) -> datetime:
        """Move the map clock forward by one tick of playback."""
        if not self.is_playing:
            return self.current_time
        step = timedelta(days=(elapsed_ms * self.playback_speed) / 1000)
        new_time = self.current_time + step
        if new_time >= self.time_window["end"]:
            self.current_time = self.time_window["end"]
            self.is_playing = False
        else:
            self.current_time = new_time
        self._changed()
        return self.current_time

    def scrub(self, progress: float):
        progress = max(0.0, min(1.0, progress))
        start, end = self.time_window["start"], self.time_window["end"]
        self.set_current_time(start + (end - start) * progress)

    def skip_to_start(self):
        self.set_current_time(self.time_window["start"])

    def skip_to_end(self):
        self.set_current_time(self.time_window["end"])

    def reset_playback(self):
        self.is_playing = False
        self.set_current_time(self.time_window["start"])

    # ============================================================
    # SELECTION, LOADING, ERRORS
    # ============================================================
    def select_cluster(self, cluster: Optional[dict]):
        self.selected_cluster = cluster
        self._changed()

    def set_loading(self, loading: bool):
        self.is_loading = bool(loading)
        self._changed()

    def set_error(self, error: Optional[str]):
        self.error = error
        self._changed()

    def performance_metrics(self) -> dict:
        return {"updateCount": self.update_count, "lastUpdate": self.last_update,
                "outbreakCount": len(self.outbreaks), "predictionCount": len(self.predictions)}

    # ============================================================
    # ANNOTATIONS
    # ============================================================
    def add_annotation(self, lat: float, lng: float, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValueError("annotation text is required")
        if len(text) > ANNOTATION_MAX_CHARS:
            raise ValueError(f"annotation text is limited to {ANNOTATION_MAX_CHARS} characters")
        annotation = {"id": str(uuid.uuid4()), "lat": lat, "lng": lng, "text": text,
                      "createdAt": self.clock().isoformat()}
        self.annotations = self.annotations + [annotation]
        self._changed()
        return annotation

    def remove_annotation(self, annotation_id: str):
        self.annotations = [a for a in self.annotations if a["id"] != annotation_id]
        self._changed()

    def search_annotations(self, query: str = "") -> List[dict]:
        q = (query or "").strip().lower()
        if not q:
            return list(self.annotations)
        return [a for a in self.annotations if q in a["text"].lower()]


# ============================================================
# REALTIME BINDING
# ============================================================
def bind_realtime(store: MapStore, socket) -> Callable[[], None]:
    """Route socket events into the store. Returns a function that unbinds them."""
    def on_deleted(payload):
        store.remove_outbreak(payload["id"] if isinstance(payload, dict) else payload)

    def on_failed(message):
        store.set_error(f"Realtime connection lost: {message}")

    handlers = {
        "outbreaks:initial": store.set_outbreaks,
        "outbreak:created": store.add_outbreak,
        "outbreak:updated": store.update_outbreak,
        "outbreak:deleted": on_deleted,
        "prediction:ready": store.add_prediction,
        "system:error": lambda payload: store.set_error(
            payload.get("message") if isinstance(payload, dict) else payload),
        "connection:failed": on_failed,
    }
    for event, handler in handlers.items():
        socket.on(event, handler)

    def unbind():
        for event, handler in handlers.items():
            socket.off(event, handler)
    return unbind

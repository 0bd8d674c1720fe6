"""
SymptoMap — HTTP API Client

Synchronous requests-based client used by the map front end and scripts.

Error policy:
  - 401: the stored token is cleared (once, however many requests fail
    together) and the navigator is sent to the login page; then APIError.
  - other 4xx/5xx: APIError carrying the server's message, else
    "Server error: <status>".
  - connection failures/timeouts: APIError("Network error: Unable to
    connect to server").
"""
import json, time, threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
from loguru import logger

from symptomap.config import API_URL, API_PREFIX, API_TIMEOUT, LOGIN_PATH

NETWORK_ERROR = "Network error: Unable to connect to server"
UNEXPECTED_ERROR = "An unexpected error occurred"


class APIError(Exception):
    def __init__(self, message: str, status: int = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body


# ============================================================
# TOKEN STORAGE
# ============================================================
class MemoryTokenStore:
    def __init__(self, token: str = None):
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str):
        self._token = token

    def clear(self):
        self._token = None


class FileTokenStore(MemoryTokenStore):
    """Token persisted as {"auth_token": ...} in a JSON file."""

    def __init__(self, path):
        self.path = Path(path)
        token = None
        if self.path.exists():
            with open(self.path) as f:
                token = json.load(f).get("auth_token")
        super().__init__(token)

    def set(self, token: str):
        super().set(token)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump({"auth_token": token}, f)

    def clear(self):
        super().clear()
        if self.path.exists():
            self.path.unlink()


def _log_navigation(path: str):
    logger.info(f"[API] Navigate to {path}")


# ============================================================
# CLIENT
# ============================================================
class SymptoMapAPI:
    """Client for the /api/v1 REST surface."""

    def __init__(self, base_url: str = API_URL, token_store=None,
                 navigate: Callable[[str], None] = None, session: requests.Session = None,
                 timeout: float = API_TIMEOUT):
        self.base_url = f"{base_url.rstrip('/')}{API_PREFIX}"
        self.tokens = token_store if token_store is not None else MemoryTokenStore()
        self.navigate = navigate or _log_navigation
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.timeout = timeout
        self._unauthorized_lock = threading.Lock()

    # ---------- transport ----------
    def _headers(self) -> dict:
        token = self.tokens.get()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self.session.request(method, f"{self.base_url}{path}",
                                            headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"[API] {method} {path} failed: {e}")
            raise APIError(NETWORK_ERROR) from e
        return self._handle_response(response)

    def _handle_response(self, response: requests.Response) -> Any:
        if response.status_code == 401:
            self._on_unauthorized()
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            body = _json_or_none(response)
            message = _error_message(body) or f"Server error: {response.status_code}"
            logger.error(f"[API] Request failed ({response.status_code}): {message}")
            raise APIError(message, response.status_code, body) from e
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _on_unauthorized(self):
        with self._unauthorized_lock:
            if self.tokens.get() is not None:
                self.tokens.clear()
                logger.warning("[API] Unauthorized, token cleared")
        self.navigate(LOGIN_PATH)

    # ---------- auth ----------
    def login(self, email: str, password: str) -> dict:
        data = self._request("POST", "/auth/login", json={"email": email, "password": password})
        self.tokens.set(data["accessToken"])
        return data

    def register(self, email: str, password: str, name: str = "") -> dict:
        data = self._request("POST", "/auth/register",
                             json={"email": email, "password": password, "name": name})
        self.tokens.set(data["accessToken"])
        return data

    def logout(self):
        self.tokens.clear()

    # ---------- outbreaks ----------
    def get_outbreaks(self, **params) -> dict:
        query = {"days": 30, **{k: v for k, v in params.items() if v is not None}}
        return self._request("GET", "/outbreaks", params=query)

    def get_outbreak(self, outbreak_id: str) -> dict:
        return self._request("GET", f"/outbreaks/{outbreak_id}")["data"]

    def create_outbreak(self, outbreak: Dict[str, Any]) -> dict:
        return self._request("POST", "/outbreaks", json=outbreak)["data"]

    def update_outbreak(self, outbreak_id: str, changes: Dict[str, Any]) -> dict:
        return self._request("PUT", f"/outbreaks/{outbreak_id}", json=changes)["data"]

    def delete_outbreak(self, outbreak_id: str):
        self._request("DELETE", f"/outbreaks/{outbreak_id}")

    # ---------- predictions ----------
    def get_predictions(self, region: Dict[str, float], horizon_days: int = 7,
                        disease_type: str = None) -> dict:
        body = {"bounds_north": region["north"], "bounds_south": region["south"],
                "bounds_east": region["east"], "bounds_west": region["west"],
                "horizon_days": horizon_days}
        if disease_type:
            body["disease_type"] = disease_type
        return self._request("POST", "/predictions", json=body)["data"]

    def get_prediction(self, prediction_id: str) -> dict:
        return self._request("GET", f"/predictions/{prediction_id}")["data"]

    # ---------- misc ----------
    def health_check(self) -> dict:
        return self._request("GET", "/health")

    def get_performance_metrics(self) -> dict:
        return self._request("GET", "/metrics")

    def get_annotations(self) -> List[dict]:
        return self._request("GET", "/map_annotations")["data"]

    def export_report(self) -> dict:
        return self._request("POST", "/exports")

    def submit_symptoms(self, report: Dict[str, Any]) -> dict:
        return self._request("POST", "/symptoms/reports", json=report)

    def analyze_symptoms(self, symptoms: str, severity: float) -> dict:
        return self._request("POST", "/symptoms/analyze",
                             json={"symptoms": symptoms, "severity": severity})

    def get_alerts(self) -> List[dict]:
        return self._request("GET", "/alerts")["data"]


# ============================================================
# HELPERS
# ============================================================
def _json_or_none(response: requests.Response):
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(body) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("message", "error", "detail"):
        if isinstance(body.get(key), str) and body[key]:
            return body[key]
    return None


def handle_api_error(error: Exception) -> str:
    """User-facing message for any exception raised by an API call."""
    if isinstance(error, APIError):
        return error.message
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return NETWORK_ERROR
    return UNEXPECTED_ERROR


def outbreak_from_form(form: Dict[str, Any]) -> dict:
    """Map front-end form fields to an outbreak create payload."""
    return {
        "latitude": form["latitude"],
        "longitude": form["longitude"],
        "case_count": form["caseCount"],
        "severity_level": form["severityLevel"],
        "disease_type": form["diseaseType"],
        "confidence": 0.8,
        "symptoms": list(form.get("symptoms", [])),
        "location_name": form.get("locationName"),
    }


def measure_api_performance(api_call: Callable[[], Any]):
    """Run `api_call` and return (result, elapsed milliseconds)."""
    started = time.perf_counter()
    data = api_call()
    return data, (time.perf_counter() - started) * 1000

"""
SymptoMap — Configuration & Constants
Environment variables, feature flags, permission matrix and domain constants.
"""
import os
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = DATA_DIR / "db.json"

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("PERSIST_DATA", "true").lower() == "true"
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
USE_REAL_API = bool(os.environ.get("ANTHROPIC_API_KEY"))
APP_VERSION = "1.0.0"

if PERSIST_DATA:
    DATA_DIR.mkdir(parents=True, exist_ok=True)

# ============================================================
# SERVER
# ============================================================
API_PREFIX = "/api/v1"
PORT = int(os.environ.get("PORT", "8787"))
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# ============================================================
# AUTH
# ============================================================
JWT_SECRET = os.environ.get("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.environ.get("JWT_EXPIRY_HOURS", "1"))
JWT_REFRESH_SECRET = os.environ.get("JWT_REFRESH_SECRET", JWT_SECRET + ":refresh")
REFRESH_EXPIRY_DAYS = int(os.environ.get("REFRESH_EXPIRY_DAYS", "7"))
BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
DEFAULT_ROLE = "viewer"

# ============================================================
# PERMISSION MATRIX (resource:action per role)
# ============================================================
_VIEWER = [
    "outbreak_reports:read", "diseases:read", "map_annotations:read",
    "predictions:read", "symptom_reports:create", "health_alerts:read",
]
_ANALYST = _VIEWER + [
    "outbreak_reports:create", "outbreak_reports:update",
    "map_annotations:create", "map_annotations:update",
    "predictions:create", "symptom_reports:read", "exports:create",
]
_ADMIN = _ANALYST + [
    "outbreak_reports:delete", "diseases:create", "diseases:update",
    "map_annotations:delete", "models:retrain",
    "users:read", "users:create", "users:update",
    "organizations:read", "organizations:update",
]
_SUPER_ADMIN = _ADMIN + [
    "diseases:delete", "users:delete",
    "organizations:create", "organizations:delete",
    "system:admin", "audit_logs:read",
]

ROLE_PERMISSIONS = {
    "viewer":      {"title": "Viewer",      "level": 1, "permissions": _VIEWER},
    "analyst":     {"title": "Analyst",     "level": 2, "permissions": _ANALYST},
    "admin":       {"title": "Admin",       "level": 3, "permissions": _ADMIN},
    "super_admin": {"title": "Super Admin", "level": 4, "permissions": _SUPER_ADMIN},
}

# ============================================================
# DOMAIN CONSTANTS
# ============================================================
DISEASES = [
    {"id": "1", "name": "COVID-19", "category": "respiratory", "icd10Code": "U07.1",
     "symptoms": ["fever", "cough", "shortness of breath"]},
    {"id": "2", "name": "Influenza", "category": "respiratory", "icd10Code": "J10",
     "symptoms": ["fever", "cough", "muscle aches"]},
]

ORGANIZATIONS = [
    {"id": "1", "name": "CDC", "type": "government", "region": "US", "country": "United States"},
    {"id": "2", "name": "WHO", "type": "ngo", "region": "Global", "country": "Switzerland"},
]

# ============================================================
# PREDICTIONS
# ============================================================
MODEL_VERSION = "1.0.0"
PREDICTION_CACHE_SECONDS = 3600
PREDICTION_EXPIRY_DAYS = 7
HISTORY_WINDOW_DAYS = 90
TREND_WINDOW_DAYS = 14
MIN_HISTORY_DAYS = 7
RETRAIN_ESTIMATE_HOURS = 2
DEFAULT_HORIZON_DAYS = 7
MAX_HORIZON_DAYS = 30

# ============================================================
# SYMPTOMS / CLUSTER DETECTION
# ============================================================
ANALYSIS_MODEL = "claude-sonnet-4-20250514"
ANALYSIS_CACHE_HOURS = 24
DETECTION_WINDOW_DAYS = 14
MIN_CLUSTER_REPORTS = 3
CLUSTER_RADIUS_KM = 55.0
ALERT_RISK_THRESHOLD = 75
SYMPTOM_KEYWORDS = [
    "fever", "headache", "cough", "fatigue", "nausea", "vomiting",
    "diarrhea", "sore throat", "muscle pain", "shortness of breath",
    "chest pain", "dizziness", "rash", "chills", "runny nose",
]

# ============================================================
# REALTIME
# ============================================================
WS_METRICS_INTERVAL_SECONDS = 30
WS_STALE_MINUTES = 5
RECONNECT_MAX_ATTEMPTS = 5
RECONNECT_BASE_DELAY_MS = 1000

# ============================================================
# CLIENT
# ============================================================
API_URL = os.environ.get("SYMPTOMAP_API_URL", "http://localhost:8787")
API_TIMEOUT = 10
LOGIN_PATH = "/login"
DEFAULT_TIME_WINDOW_DAYS = 30
PLAYBACK_SPEEDS = (0.5, 1, 2, 4, 8)
ANNOTATION_MAX_CHARS = 280

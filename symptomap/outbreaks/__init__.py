"""
SymptoMap — Outbreak Clusters

Architecture:
  An outbreak cluster is a located aggregate of reported cases with a 1-5
  severity rating. Clusters are stored as camelCase records in the
  `outbreaks` collection, the same shape the map renders.

Queries:
  Listing filters by a lat/lng box, a look-back window in days (on
  lastUpdated), disease type and minimum severity. Results are newest first.
  Stats summarize the same look-back window.
"""
from datetime import timedelta

from symptomap.db import get_db, save_db, new_id, now_iso, now_utc, parse_ts

# ============================================================
# CONSTANTS
# ============================================================
DEFAULT_LOOKBACK_DAYS = 30

_UPDATABLE = {
    "disease_type": "diseaseType", "latitude": "latitude", "longitude": "longitude",
    "case_count": "caseCount", "severity_level": "severityLevel",
    "confidence": "confidence", "symptoms": "symptoms", "location_name": "locationName",
}


# ============================================================
# BOUNDS
# ============================================================
def validate_bounds(lat_min=None, lat_max=None, lng_min=None, lng_max=None):
    """Raise ValueError when a min/max pair is inverted."""
    if lat_min is not None and lat_max is not None and lat_min >= lat_max:
        raise ValueError("lat_min must be less than lat_max")
    if lng_min is not None and lng_max is not None and lng_min >= lng_max:
        raise ValueError("lng_min must be less than lng_max")


def in_box(outbreak: dict, lat_min=None, lat_max=None, lng_min=None, lng_max=None) -> bool:
    lat, lng = outbreak["latitude"], outbreak["longitude"]
    if lat_min is not None and lat < lat_min: return False
    if lat_max is not None and lat > lat_max: return False
    if lng_min is not None and lng < lng_min: return False
    if lng_max is not None and lng > lng_max: return False
    return True


def in_region(outbreak: dict, region: dict) -> bool:
    """True when the outbreak lies inside a {north, south, east, west} region."""
    return in_box(outbreak, lat_min=region["south"], lat_max=region["north"],
                  lng_min=region["west"], lng_max=region["east"])


# ============================================================
# QUERIES
# ============================================================
def list_outbreaks(lat_min: float = None, lat_max: float = None,
                   lng_min: float = None, lng_max: float = None,
                   days: int = DEFAULT_LOOKBACK_DAYS, disease_type: str = None,
                   severity_min: int = None) -> list:
    validate_bounds(lat_min, lat_max, lng_min, lng_max)
    cutoff = now_utc() - timedelta(days=days)
    rows = []
    for o in get_db().get("outbreaks", []):
        if parse_ts(o["lastUpdated"]) < cutoff:
            continue
        if not in_box(o, lat_min, lat_max, lng_min, lng_max):
            continue
        if disease_type and o["diseaseType"] != disease_type:
            continue
        if severity_min is not None and o["severityLevel"] < severity_min:
            continue
        rows.append(o)
    return sorted(rows, key=lambda o: o["lastUpdated"], reverse=True)


def get_outbreak(outbreak_id: str) -> dict:
    return next((o for o in get_db().get("outbreaks", []) if o["id"] == outbreak_id), None)


def outbreak_stats(days_back: int = DEFAULT_LOOKBACK_DAYS) -> dict:
    rows = list_outbreaks(days=days_back)
    severities = [o["severityLevel"] for o in rows]
    return {
        "totalCases": sum(o["caseCount"] for o in rows),
        "totalOutbreaks": len(rows),
        "avgSeverity": round(sum(severities) / len(severities), 2) if severities else 0,
        "maxSeverity": max(severities) if severities else 0,
        "minSeverity": min(severities) if severities else 0,
        "daysBack": days_back,
    }


# ============================================================
# MUTATIONS
# ============================================================
def create_outbreak(data, created_by: str = None) -> dict:
    """Store a new cluster from an OutbreakCreate payload."""
    ts = now_iso()
    outbreak = {
        "id": new_id(),
        "latitude": data.latitude,
        "longitude": data.longitude,
        "caseCount": data.case_count,
        "severityLevel": data.severity_level,
        "diseaseType": data.disease_type,
        "confidence": data.confidence,
        "lastUpdated": ts,
        "symptoms": list(data.symptoms),
        "locationName": data.location_name,
        "createdBy": created_by,
        "createdAt": ts,
    }
    db = get_db()
    db["outbreaks"].append(outbreak)
    save_db(db)
    return outbreak


def update_outbreak(outbreak_id: str, changes) -> dict:
    """Apply the set fields of an OutbreakUpdate; None when the id is unknown."""
    db = get_db()
    outbreak = next((o for o in db["outbreaks"] if o["id"] == outbreak_id), None)
    if not outbreak:
        return None
    for field, value in changes.model_dump(exclude_unset=True).items():
        if value is not None and field in _UPDATABLE:
            outbreak[_UPDATABLE[field]] = value
    outbreak["lastUpdated"] = now_iso()
    save_db(db)
    return outbreak


def delete_outbreak(outbreak_id: str) -> dict:
    """Remove a cluster and return it; None when the id is unknown."""
    db = get_db()
    outbreak = next((o for o in db["outbreaks"] if o["id"] == outbreak_id), None)
    if not outbreak:
        return None
    db["outbreaks"] = [o for o in db["outbreaks"] if o["id"] != outbreak_id]
    save_db(db)
    return outbreak

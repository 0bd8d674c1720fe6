"""
SymptoMap — Symptom Reports, Analysis & Cluster Detection

Architecture:
  1. SUBMIT: public symptom reports are sanitized (length caps, severity
     floor/clamp) and stored. Detection runs after every submission; a failed
     detection run is logged and never fails the submission.

  2. ANALYZE: free-text symptoms are mapped to medical terms, ICD-10 codes, a
     cluster probability and a risk score. Claude is used when an API key is
     configured, a keyword matcher otherwise (or when Claude fails). Results
     are cached for 24h by the sha256 of the lower-cased text.

  3. DETECT: reports from the last 14 days are grouped greedily: each
     unprocessed report pulls in every unprocessed report within ~55km. Groups
     of 3+ become clusters, scored on severity, density and recency. Critical
     or high-risk clusters raise health alerts.
"""
import json, math, random, hashlib
from datetime import timedelta
from collections import Counter

import anthropic
from loguru import logger

from symptomap.config import (
    USE_REAL_API, ANALYSIS_MODEL, ANALYSIS_CACHE_HOURS, DETECTION_WINDOW_DAYS,
    MIN_CLUSTER_REPORTS, CLUSTER_RADIUS_KM, ALERT_RISK_THRESHOLD, SYMPTOM_KEYWORDS,
)
from symptomap.db import get_db, save_db, new_id, now_iso, now_utc, parse_ts

MAX_DESCRIPTION_CHARS = 2000
MAX_SYMPTOMS = 20
MAX_SYMPTOM_CHARS = 64
RECENT_REPORT_DAYS = 7
EARTH_RADIUS_KM = 6371.0

RECOMMENDED_ACTIONS = [
    "Deploy field investigation team",
    "Increase local surveillance",
    "Prepare containment measures",
    "Alert regional health authorities",
]

# ============================================================
# SUBMISSION
# ============================================================
def sanitize_submission(submission) -> dict:
    """Normalize a SymptomSubmission into a stored report record."""
    loc = submission.location
    return {
        "location": {"lat": loc.lat, "lng": loc.lng,
                     "city": loc.city.strip(), "country": loc.country.strip()},
        "description": str(submission.description)[:MAX_DESCRIPTION_CHARS].strip(),
        "symptoms": [str(s)[:MAX_SYMPTOM_CHARS] for s in submission.symptoms[:MAX_SYMPTOMS]],
        "severity": max(1, min(10, math.floor(submission.severity))),
        "ageRange": submission.age_range,
        "hasRecentTravel": bool(submission.has_recent_travel),
    }


def submit_report(submission) -> dict:
    report = {"id": new_id(), **sanitize_submission(submission), "createdAt": now_iso()}
    db = get_db()
    db["symptom_reports"].append(report)
    save_db(db)
    logger.info(f"[SYMPTOMS] Stored report {report['id']} from {report['location']['city']}")

    try:
        detect_clusters()
    except Exception as e:
        logger.error(f"[SYMPTOMS] Cluster detection after {report['id']} failed: {e}")
    return report


def list_reports(days: int = RECENT_REPORT_DAYS) -> list:
    cutoff = now_utc() - timedelta(days=days)
    rows = [r for r in get_db().get("symptom_reports", []) if parse_ts(r["createdAt"]) >= cutoff]
    return sorted(rows, key=lambda r: r["createdAt"], reverse=True)


# ============================================================
# ANALYSIS
# ============================================================
ANALYSIS_PROMPT = """You are a medical AI assistant specialized in symptom analysis for epidemic surveillance.

Analyze the following symptom description:

SYMPTOMS: "{symptoms}"
SEVERITY: {severity}/10

Extract the individual symptoms, map them to medical terminology and ICD-10 codes,
estimate the probability this is part of an epidemic cluster (0-1) and a risk score (0-100).

Respond ONLY with valid JSON:
{{
  "extractedSymptoms": ["symptom1", "symptom2"],
  "medicalTerms": ["MEDICAL_TERM_1"],
  "icd10Codes": ["R50.9"],
  "clusterProbability": 0.75,
  "riskScore": 85.2
}}"""


def input_hash(text: str) -> str:
    return hashlib.sha256(text.lower().encode()).hexdigest()


def _clamp(value, lo, hi):
    return max(lo, min(hi, value))


def keyword_analysis(text: str, severity: float, rng=random) -> dict:
    """Rule-based analysis: match known symptom keywords in the text."""
    lower = text.lower()
    found = [k for k in SYMPTOM_KEYWORDS if k in lower]
    return {
        "medicalTerms": [k.upper().replace(" ", "_") for k in found],
        "icd10Codes": [f"R{rng.randrange(99):02d}.{rng.randrange(9)}"],
        "clusterProbability": round(min(1.0, severity / 10 + rng.random() * 0.3), 4),
        "riskScore": round(_clamp(severity * 8 + rng.random() * 20, 0, 100), 2),
        "extractedSymptoms": found,
    }


def _parse_claude_json(text: str) -> dict:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1]
        if text.endswith("```"): text = text[:-3]
        text = text.strip()
    return json.loads(text)


async def analyze_with_claude(text: str, severity: float) -> dict:
    if not USE_REAL_API:
        return keyword_analysis(text, severity)

    client = anthropic.AsyncAnthropic()
    try:
        msg = await client.messages.create(model=ANALYSIS_MODEL, max_tokens=500,
            messages=[{"role": "user", "content": ANALYSIS_PROMPT.format(symptoms=text, severity=severity)}])
        parsed = _parse_claude_json(msg.content[0].text)
        return {
            "medicalTerms": parsed.get("medicalTerms") or [],
            "icd10Codes": parsed.get("icd10Codes") or [],
            "clusterProbability": _clamp(float(parsed.get("clusterProbability") or 0.5), 0, 1),
            "riskScore": _clamp(float(parsed.get("riskScore") or severity * 10), 0, 100),
            "extractedSymptoms": parsed.get("extractedSymptoms") or [],
        }
    except Exception as e:
        logger.warning(f"[SYMPTOMS] Claude analysis failed, using keyword fallback: {e}")
        return keyword_analysis(text, severity)


async def analyze_symptoms(symptoms: str, severity: float) -> dict:
    text = str(symptoms)[:MAX_DESCRIPTION_CHARS].strip()
    severity = _clamp(severity, 1, 10)
    key = input_hash(text)
    now = now_utc()

    db = get_db()
    cached = next((c for c in db["analysis_cache"]
                   if c["inputHash"] == key and parse_ts(c["expiresAt"]) > now), None)
    if cached:
        logger.debug(f"[SYMPTOMS] Analysis cache hit {key[:12]}")
        return {k: cached[k] for k in ("medicalTerms", "icd10Codes", "clusterProbability",
                                       "riskScore", "extractedSymptoms")}

    result = await analyze_with_claude(text, severity)
    db = get_db()
    db["analysis_cache"] = [c for c in db["analysis_cache"] if parse_ts(c["expiresAt"]) > now]
    db["analysis_cache"].append({
        "inputHash": key, "symptomsText": text, **result,
        "modelUsed": ANALYSIS_MODEL if USE_REAL_API else "keyword",
        "expiresAt": (now + timedelta(hours=ANALYSIS_CACHE_HOURS)).isoformat(),
    })
    save_db(db)
    return result


# ============================================================
# CLUSTER DETECTION
# ============================================================
def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def recency_factor(reports: list, now=None) -> float:
    """1.0 for brand-new reports, falling linearly to 0 at 14 days average age."""
    now = now or now_utc()
    ages = [(now - parse_ts(r["createdAt"])).total_seconds() / 86400 for r in reports]
    return _clamp(1 - (sum(ages) / len(ages)) / DETECTION_WINDOW_DAYS, 0, 1)


def severity_label(risk: float) -> str:
    if risk > 80: return "critical"
    if risk > 65: return "concerning"
    if risk > 45: return "unusual"
    return "normal"


def _build_cluster(members: list, now) -> dict:
    n = len(members)
    avg_severity = sum(r["severity"] for r in members) / n
    risk = min(100.0, (avg_severity / 10) * 40 + math.log10(n) * 35 + recency_factor(members, now) * 25)
    counts = Counter(s for r in members for s in r.get("symptoms", []))
    oldest = min(parse_ts(r["createdAt"]) for r in members)
    days_since_first = (now - oldest).total_seconds() / 86400
    return {
        "id": new_id(),
        "centerLat": sum(r["location"]["lat"] for r in members) / n,
        "centerLng": sum(r["location"]["lng"] for r in members) / n,
        "radius": max(0.1, math.sqrt(n) * 0.2),
        "reportCount": n,
        "dominantSymptoms": [s for s, _ in counts.most_common(3)],
        "severity": severity_label(risk),
        "riskScore": round(risk, 2),
        "growthRate": round(n / max(1.0, days_since_first), 2),
        "locationName": members[0]["location"]["city"],
        "reportIds": [r["id"] for r in members],
        "isActive": True,
        "createdAt": now.isoformat(),
    }


def find_clusters(reports: list, now=None) -> list:
    """Greedy radius grouping; only groups of MIN_CLUSTER_REPORTS+ are kept."""
    now = now or now_utc()
    processed, clusters = set(), []
    for report in reports:
        if report["id"] in processed:
            continue
        lat, lng = report["location"]["lat"], report["location"]["lng"]
        nearby = [r for r in reports
                  if r["id"] not in processed and r["id"] != report["id"]
                  and haversine_km(lat, lng, r["location"]["lat"], r["location"]["lng"]) <= CLUSTER_RADIUS_KM]
        members = [report] + nearby
        if len(members) < MIN_CLUSTER_REPORTS:
            continue
        processed.update(r["id"] for r in members)
        clusters.append(_build_cluster(members, now))
    return clusters


def _alert_for(cluster: dict) -> dict:
    place = cluster["locationName"]
    return {
        "id": new_id(),
        "alertLevel": "critical" if cluster["severity"] == "critical" else "high",
        "title": f"Potential Disease Cluster Detected in {place}",
        "description": (f"Surveillance has detected {cluster['reportCount']} similar symptom reports in {place}. "
                        f"Dominant symptoms: {', '.join(cluster['dominantSymptoms'])}. "
                        f"Risk Score: {cluster['riskScore']}/100."),
        "affectedRegions": [place],
        "estimatedImpact": f"{cluster['reportCount']} reported cases, growth rate: {cluster['growthRate']} cases/day",
        "recommendedActions": list(RECOMMENDED_ACTIONS),
        "clusterId": cluster["id"],
        "createdAt": now_iso(),
    }


def detect_clusters() -> dict:
    """Re-run detection over recent reports, replacing the active cluster set."""
    now = now_utc()
    reports = list_reports(days=DETECTION_WINDOW_DAYS)
    if len(reports) < MIN_CLUSTER_REPORTS:
        return {"message": "Insufficient reports for outbreak detection", "clustersFound": 0,
                "clusters": [], "alerts": []}

    clusters = find_clusters(reports, now)
    alerts = [_alert_for(c) for c in clusters
              if c["severity"] == "critical" or c["riskScore"] > ALERT_RISK_THRESHOLD]

    db = get_db()
    for c in db["symptom_clusters"]:
        c["isActive"] = False
    db["symptom_clusters"].extend(clusters)
    db["health_alerts"].extend(alerts)
    save_db(db)
    logger.info(f"[SYMPTOMS] Detected {len(clusters)} clusters, raised {len(alerts)} alerts "
                f"from {len(reports)} reports")

    return {
        "success": True,
        "clustersFound": len(clusters),
        "criticalClusters": sum(1 for c in clusters if c["severity"] == "critical"),
        "concerningClusters": sum(1 for c in clusters if c["severity"] == "concerning"),
        "clusters": [{"id": c["id"], "location": c["locationName"], "reportCount": c["reportCount"],
                      "riskScore": c["riskScore"], "severity": c["severity"],
                      "dominantSymptoms": c["dominantSymptoms"]} for c in clusters],
        "alerts": alerts,
    }


def active_clusters() -> list:
    return [c for c in get_db().get("symptom_clusters", []) if c.get("isActive")]


def list_alerts(limit: int = None) -> list:
    rows = sorted(get_db().get("health_alerts", []), key=lambda a: a["createdAt"], reverse=True)
    return rows[:limit] if limit else rows

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from symptomap import symptoms
from symptomap.db import get_db, save_db, new_id, now_utc
from symptomap.schemas import SymptomSubmission


def submission(**overrides):
    data = {"location": {"lat": 40.71, "lng": -74.0, "city": "New York", "country": "US"},
            "description": "High fever and dry cough since Monday", "severity": 7,
            "symptoms": ["fever", "cough"]}
    data.update(overrides)
    return SymptomSubmission(**data)


def seed_reports(points, severity=10, age_days=0, symptom_lists=None):
    db = get_db()
    ts = (now_utc() - timedelta(days=age_days)).isoformat()
    for i, (lat, lng) in enumerate(points):
        db["symptom_reports"].append({
            "id": new_id(), "location": {"lat": lat, "lng": lng, "city": "Springfield", "country": "US"},
            "description": "x", "severity": severity,
            "symptoms": (symptom_lists[i] if symptom_lists else ["fever"]),
            "ageRange": None, "hasRecentTravel": False, "createdAt": ts,
        })
    save_db(db)


# ============================================================
# SANITIZING
# ============================================================
def test_sanitize_truncates_and_floors():
    report = symptoms.sanitize_submission(submission(
        description="a" * 2500, severity=7.9,
        symptoms=["s" * 100] + [f"sym{i}" for i in range(30)]))
    assert len(report["description"]) == 2000
    assert len(report["symptoms"]) == 20
    assert len(report["symptoms"][0]) == 64
    assert report["severity"] == 7


def test_submit_via_api(client, headers):
    r = client.post("/api/v1/symptoms/reports", headers=headers("viewer"), json={
        "location": {"lat": 51.5, "lng": -0.12, "city": "London", "country": "UK"},
        "description": "headache", "severity": 4, "symptoms": ["headache"],
        "age_range": "30-39", "has_recent_travel": True})
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["data"]["ageRange"] == "30-39"
    assert body["data"]["hasRecentTravel"] is True


def test_submit_rejects_out_of_range_severity(client, headers):
    r = client.post("/api/v1/symptoms/reports", headers=headers("viewer"), json={
        "location": {"lat": 51.5, "lng": -0.12, "city": "London", "country": "UK"},
        "description": "headache", "severity": 11})
    assert r.status_code == 400
    assert r.json()["details"][0]["field"] == "severity"


def test_submit_survives_detection_failure(monkeypatch):
    def boom():
        raise RuntimeError("detector down")
    monkeypatch.setattr(symptoms, "detect_clusters", boom)
    report = symptoms.submit_report(submission())
    assert get_db()["symptom_reports"][0]["id"] == report["id"]


def test_recent_reports_listing(client, headers):
    seed_reports([(1, 1)], age_days=10)
    seed_reports([(2, 2)], age_days=1)
    assert client.get("/api/v1/symptoms/reports", headers=headers("viewer")).status_code == 403
    rows = client.get("/api/v1/symptoms/reports", headers=headers("analyst")).json()["data"]
    assert [r["location"]["lat"] for r in rows] == [2]


# ============================================================
# ANALYSIS
# ============================================================
def test_keyword_analysis():
    rng = SimpleNamespace(randrange=lambda n: 5, random=lambda: 0.0)
    result = symptoms.keyword_analysis("Fever, sore throat and a RASH", 6, rng=rng)
    assert result["extractedSymptoms"] == ["fever", "sore throat", "rash"]
    assert result["medicalTerms"] == ["FEVER", "SORE_THROAT", "RASH"]
    assert result["icd10Codes"] == ["R05.5"]
    assert result["clusterProbability"] == 0.6
    assert result["riskScore"] == 48


def test_analysis_is_cached_by_text(client, headers):
    h = headers("viewer")
    first = client.post("/api/v1/symptoms/analyze", headers=h,
                        json={"symptoms": "Fever and chills", "severity": 5}).json()
    second = client.post("/api/v1/symptoms/analyze", headers=h,
                         json={"symptoms": "fever AND chills", "severity": 5}).json()
    assert first == second
    assert first["extractedSymptoms"] == ["fever", "chills"]
    assert 0 <= first["clusterProbability"] <= 1
    assert 0 <= first["riskScore"] <= 100
    assert len(get_db()["analysis_cache"]) == 1


def test_expired_cache_entry_is_replaced():
    asyncio.run(symptoms.analyze_symptoms("cough", 3))
    db = get_db()
    db["analysis_cache"][0]["expiresAt"] = (now_utc() - timedelta(hours=1)).isoformat()
    db["analysis_cache"][0]["extractedSymptoms"] = ["stale"]
    save_db(db)
    fresh = asyncio.run(symptoms.analyze_symptoms("cough", 3))
    assert fresh["extractedSymptoms"] == ["cough"]
    assert len(get_db()["analysis_cache"]) == 1


def test_claude_response_is_clamped(monkeypatch):
    reply = SimpleNamespace(content=[SimpleNamespace(
        text='```json\n{"extractedSymptoms": ["fever"], "medicalTerms": ["PYREXIA"], '
             '"icd10Codes": ["R50.9"], "clusterProbability": 3, "riskScore": 250}\n```')])
    fake = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=reply)))
    monkeypatch.setattr(symptoms, "USE_REAL_API", True)
    monkeypatch.setattr(symptoms.anthropic, "AsyncAnthropic", lambda: fake)
    result = asyncio.run(symptoms.analyze_with_claude("fever", 5))
    fake.messages.create.assert_awaited_once()
    assert fake.messages.create.await_args.kwargs["model"] == symptoms.ANALYSIS_MODEL
    assert result["clusterProbability"] == 1
    assert result["riskScore"] == 100
    assert result["medicalTerms"] == ["PYREXIA"]


def test_claude_garbage_falls_back_to_keywords(monkeypatch):
    reply = SimpleNamespace(content=[SimpleNamespace(text="I cannot answer that")])
    fake = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=reply)))
    monkeypatch.setattr(symptoms, "USE_REAL_API", True)
    monkeypatch.setattr(symptoms.anthropic, "AsyncAnthropic", lambda: fake)
    result = asyncio.run(symptoms.analyze_with_claude("nausea and dizziness", 5))
    assert result["extractedSymptoms"] == ["nausea", "dizziness"]


# ============================================================
# CLUSTER DETECTION
# ============================================================
def test_haversine():
    assert symptoms.haversine_km(0, 0, 0, 0) == 0
    assert symptoms.haversine_km(0, 0, 0.5, 0) == pytest.approx(55.6, abs=0.2)


def test_too_few_reports():
    seed_reports([(10, 10), (10.01, 10.01)])
    result = symptoms.detect_clusters()
    assert result["clustersFound"] == 0
    assert result["message"] == "Insufficient reports for outbreak detection"


def test_nearby_severe_reports_form_critical_cluster_with_alert(client, headers):
    seed_reports([(40.0, -74.0), (40.1, -74.1), (40.2, -73.9)], severity=10,
                 symptom_lists=[["fever", "cough"], ["fever"], ["fever", "rash"]])
    seed_reports([(10.0, 10.0)], severity=10)

    r = client.post("/api/v1/symptoms/detect", headers=headers("analyst"))
    assert r.status_code == 200
    result = r.json()
    assert result["clustersFound"] == 1
    cluster = result["clusters"][0]
    assert cluster["reportCount"] == 3
    assert cluster["severity"] == "critical"
    assert cluster["dominantSymptoms"][0] == "fever"
    assert cluster["riskScore"] <= 100

    alerts = client.get("/api/v1/alerts", headers=headers("viewer")).json()["data"]
    assert len(alerts) == 1
    assert alerts[0]["alertLevel"] == "critical"
    assert alerts[0]["affectedRegions"] == ["Springfield"]
    assert len(client.get("/api/v1/symptoms/clusters", headers=headers("viewer")).json()["data"]) == 1


def test_scattered_reports_do_not_cluster():
    seed_reports([(0, 0), (5, 5), (10, 10), (15, 15)])
    result = symptoms.detect_clusters()
    assert result["clustersFound"] == 0
    assert get_db()["health_alerts"] == []


def test_mild_old_cluster_raises_no_alert():
    seed_reports([(0, 0), (0.1, 0.1), (0.2, 0.0)], severity=1, age_days=12)
    result = symptoms.detect_clusters()
    assert result["clustersFound"] == 1
    # 0.1*40 + log10(3)*35 + (1 - 12/14)*25 ≈ 24.3
    assert result["clusters"][0]["severity"] == "normal"
    assert result["alerts"] == []


def test_rerun_deactivates_previous_clusters():
    seed_reports([(0, 0), (0.1, 0.1), (0.2, 0.0)])
    symptoms.detect_clusters()
    symptoms.detect_clusters()
    assert len(get_db()["symptom_clusters"]) == 2
    assert len(symptoms.active_clusters()) == 1


def test_severity_labels():
    assert symptoms.severity_label(81) == "critical"
    assert symptoms.severity_label(80) == "concerning"
    assert symptoms.severity_label(66) == "concerning"
    assert symptoms.severity_label(46) == "unusual"
    assert symptoms.severity_label(45) == "normal"

"""
SymptoMap — Outbreak Prediction Service

Architecture:
  1. HISTORY: outbreak clusters inside the requested region over the last
     90 days, grouped per day (total cases, average severity, outbreak count).

  2. FORECAST: with at least a week of history, fit a least-squares line over
     the last two weeks and project it forward with ±20% jitter. With less,
     fall back to a conservative low-risk forecast.

  3. STORE: each forecast is written to the `predictions` collection with a
     7-day expiry and cached in-process for an hour, keyed by the request.

The model catalogue, retraining and performance numbers are fixed: there is
no trained model behind them.
"""
import json, time
from datetime import timedelta
from collections import OrderedDict

import numpy as np
from loguru import logger

from symptomap.config import (
    MODEL_VERSION, PREDICTION_CACHE_SECONDS, PREDICTION_EXPIRY_DAYS,
    HISTORY_WINDOW_DAYS, TREND_WINDOW_DAYS, MIN_HISTORY_DAYS,
    RETRAIN_ESTIMATE_HOURS, DEFAULT_HORIZON_DAYS,
)
from symptomap.db import get_db, save_db, new_id, now_iso, now_utc, parse_ts
from symptomap.schemas import MLPrediction, PredictionDataPoint, ModelInfo, ModelPerformance

DEFAULT_SEVERITY = 2.5
CONSERVATIVE_INTERVAL = (0, 20)
CONSERVATIVE_CONFIDENCE = 0.3

# ============================================================
# MODEL CATALOGUE
# ============================================================
MODELS = [
    {"id": "model-1", "name": "COVID-19 Trend Predictor", "disease_type": "covid-19",
     "accuracy": 0.85, "mape": 15.2, "rmse": 8.5},
    {"id": "model-2", "name": "Influenza Spread Model", "disease_type": "influenza",
     "accuracy": 0.78, "mape": 22.1, "rmse": 12.3},
    {"id": "model-3", "name": "General Outbreak Predictor", "disease_type": "mixed",
     "accuracy": 0.72, "mape": 28.5, "rmse": 15.7},
]


def risk_level(cases: float, avg_severity: float = None) -> str:
    score = cases * (avg_severity or DEFAULT_SEVERITY)
    if score < 20: return "low"
    if score < 50: return "medium"
    if score < 100: return "high"
    return "critical"


def trend_slope(cases) -> float:
    """Least-squares slope of daily case totals against day index."""
    if len(cases) < 2:
        return 0.0
    x = np.arange(len(cases), dtype=float)
    slope, _ = np.polyfit(x, np.asarray(cases, dtype=float), 1)
    return float(slope)


def trend_consistency(cases) -> float:
    """1 - variance(day-over-day change)/100, floored at 0.3."""
    if len(cases) < MIN_HISTORY_DAYS:
        return 0.5
    changes = np.diff(np.asarray(cases, dtype=float))
    return max(0.3, 1 - float(np.var(changes)) / 100)


# ============================================================
# SERVICE
# ============================================================
class PredictionService:
    """Trend forecaster over stored outbreak clusters.

    `rng` is a numpy Generator; pass a seeded one for reproducible jitter.
    """

    def __init__(self, rng=None, cache_seconds: int = PREDICTION_CACHE_SECONDS):
        self.rng = rng if rng is not None else np.random.default_rng()
        self.cache_seconds = cache_seconds
        self._cache = OrderedDict()

    # ---------- public ----------
    def generate_prediction(self, region: dict, horizon_days: int = DEFAULT_HORIZON_DAYS,
                            disease_type: str = None) -> dict:
        key = self._cache_key(region, horizon_days, disease_type)
        hit = self._cache.get(key)
        if hit and hit[0] > time.monotonic():
            logger.debug(f"[PRED] Cache hit for {key}")
            return hit[1]

        prediction = self._create_prediction(region, horizon_days, disease_type)
        self._cache[key] = (time.monotonic() + self.cache_seconds, prediction)
        self._evict()
        return prediction

    def get_prediction(self, prediction_id: str) -> dict:
        """Stored prediction by id, or None when missing or expired."""
        row = next((p for p in get_db().get("predictions", []) if p["id"] == prediction_id), None)
        if not row or parse_ts(row["expiresAt"]) <= now_utc():
            return None
        return {k: row[k] for k in MLPrediction.model_fields}

    def list_models(self) -> list:
        ts = now_iso()
        return [ModelInfo(id=m["id"], name=m["name"], version=MODEL_VERSION,
                          disease_type=m["disease_type"], accuracy=m["accuracy"],
                          last_trained=ts, status="active").model_dump()
                for m in MODELS]

    def retrain_model(self, model_id: str) -> dict:
        """Kick off (simulated) retraining; None for an unknown model."""
        if not any(m["id"] == model_id for m in MODELS):
            return None
        eta = now_utc() + timedelta(hours=RETRAIN_ESTIMATE_HOURS)
        logger.info(f"[PRED] Retrain requested for {model_id}, eta {eta.isoformat()}")
        return {"status": "training_started", "estimated_completion": eta.isoformat()}

    def performance_metrics(self) -> list:
        ts = now_iso()
        return [ModelPerformance(model_id=m["id"], mape=m["mape"], rmse=m["rmse"],
                                 accuracy=m["accuracy"], last_evaluated=ts).model_dump()
                for m in MODELS]

    def clear_cache(self):
        self._cache.clear()

    # ---------- internals ----------
    @staticmethod
    def _cache_key(region: dict, horizon_days: int, disease_type: str) -> str:
        return "prediction:" + json.dumps(
            {"region": region, "horizonDays": horizon_days, "diseaseType": disease_type},
            sort_keys=True)

    def _evict(self):
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._cache.items() if exp <= now]:
            del self._cache[key]

    def _create_prediction(self, region: dict, horizon_days: int, disease_type: str) -> dict:
        history = self.historical_data(region, disease_type)
        points = self._forecast(history, horizon_days)
        confidence = self._confidence(history)

        generated = now_utc()
        prediction = MLPrediction(
            id=new_id(), region=region, predictions=points,
            confidenceScore=round(confidence, 4), modelVersion=MODEL_VERSION,
            generatedAt=generated.isoformat(),
        ).model_dump()

        db = get_db()
        db["predictions"].append({
            **prediction,
            "diseaseType": disease_type or "mixed",
            "expiresAt": (generated + timedelta(days=PREDICTION_EXPIRY_DAYS)).isoformat(),
        })
        save_db(db)
        logger.info(f"[PRED] Generated {prediction['id']} from {len(history)} days of history")
        return prediction

    def historical_data(self, region: dict, disease_type: str = None) -> list:
        cutoff = now_utc() - timedelta(days=HISTORY_WINDOW_DAYS)
        days = {}
        for o in get_db().get("outbreaks", []):
            created = parse_ts(o.get("createdAt") or o["lastUpdated"])
            if created < cutoff:
                continue
            if not (region["south"] <= o["latitude"] <= region["north"]
                    and region["west"] <= o["longitude"] <= region["east"]):
                continue
            if disease_type and o["diseaseType"] != disease_type:
                continue
            day = days.setdefault(created.date(), {"cases": 0, "severities": []})
            day["cases"] += o["caseCount"]
            day["severities"].append(o["severityLevel"])
        return [{"date": d, "total_cases": v["cases"],
                 "avg_severity": sum(v["severities"]) / len(v["severities"]),
                 "outbreak_count": len(v["severities"])}
                for d, v in sorted(days.items())]

    def _forecast(self, history: list, horizon_days: int) -> list:
        if len(history) < MIN_HISTORY_DAYS:
            return self._conservative(horizon_days)

        recent = history[-TREND_WINDOW_DAYS:]
        slope = trend_slope([d["total_cases"] for d in recent])
        last = recent[-1]
        points = []
        for i in range(1, horizon_days + 1):
            base = max(0.0, last["total_cases"] + slope * i)
            cases = int(round(base * self.rng.uniform(0.8, 1.2)))
            margin = int(round(cases * 0.3))
            points.append(PredictionDataPoint(
                date=(last["date"] + timedelta(days=i)).isoformat(),
                predictedCases=cases,
                confidenceInterval={"lower": max(0, cases - margin), "upper": cases + margin},
                riskLevel=risk_level(cases, last["avg_severity"]),
            ))
        return points

    def _conservative(self, horizon_days: int) -> list:
        today = now_utc().date()
        lower, upper = CONSERVATIVE_INTERVAL
        return [PredictionDataPoint(
                    date=(today + timedelta(days=i)).isoformat(),
                    predictedCases=int(round(5 + self.rng.random() * 10)),
                    confidenceInterval={"lower": lower, "upper": upper},
                    riskLevel="low")
                for i in range(1, horizon_days + 1)]

    @staticmethod
    def _confidence(history: list) -> float:
        if len(history) < MIN_HISTORY_DAYS:
            return CONSERVATIVE_CONFIDENCE
        quality = min(1.0, len(history) / 30)
        return min(0.95, quality * trend_consistency([d["total_cases"] for d in history]))


prediction_service = PredictionService()

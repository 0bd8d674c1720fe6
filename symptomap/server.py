"""
SymptoMap — Disease Outbreak Mapping API
REST routes under /api/v1 plus the Socket.IO server, served as one ASGI app.
"""

import time, uuid, asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException, Depends, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
import socketio
from loguru import logger

from symptomap.config import (
    API_PREFIX, APP_VERSION, ENVIRONMENT, CORS_ORIGINS, PORT, DEFAULT_ROLE,
    DISEASES, ORGANIZATIONS, ROLE_PERMISSIONS, JWT_EXPIRY_HOURS,
)
from symptomap.logger import setup_logging
from symptomap.db import ping_db, now_iso, DATABASE_URL
from symptomap.auth import (
    create_user, authenticate, issue_tokens, create_jwt, public_user, get_current_user,
    require_permission, decode_refresh_token, revoke_refresh_token, get_user_by_id, verify_password,
    list_users, update_user, set_password, deactivate_user,
)
from symptomap.audit import (
    log_audit_event, log_data_access, log_authentication, request_context, get_audit_logs,
)
from symptomap.schemas import (
    OutbreakCreate, OutbreakUpdate, PredictionCreate, LoginRequest, RegisterRequest,
    RefreshRequest, LogoutRequest, ProfileUpdate, ChangePasswordRequest, PasswordReset,
    UserCreate, UserUpdate,
    SymptomSubmission, SymptomAnalysisRequest, SystemNotice,
)
from symptomap import outbreaks as outbreak_store
from symptomap import symptoms
from symptomap.predictions import prediction_service
from symptomap.realtime import (
    sio, broadcast_outbreak_change, notify_system, metrics_loop, live_connections,
)

START_TIME = time.monotonic()
_response_times = deque(maxlen=500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"[SERVER] SymptoMap {APP_VERSION} starting ({ENVIRONMENT})")
    metrics_task = asyncio.create_task(metrics_loop())
    yield
    metrics_task.cancel()
    logger.info("[SERVER] Shutting down")


app = FastAPI(title="SymptoMap", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])


# ============================================================
# REQUEST LOGGING
# ============================================================
@app.middleware("http")
async def log_requests(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    _response_times.append(elapsed_ms)
    response.headers["X-Request-ID"] = request.state.request_id
    logger.info(f"[HTTP] {request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms")
    return response


# ============================================================
# ERROR HANDLERS
# ============================================================
def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [{"field": ".".join(str(p) for p in err.get("loc", ())[1:]),
                "message": err.get("msg", ""), "code": err.get("type", "")}
               for err in exc.errors()]
    return JSONResponse(status_code=400, content={
        "error": "Validation Error", "message": "Invalid request data",
        "details": details, "timestamp": now_iso(),
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        error, message = "Not Found", f"Route {request.method} {request.url.path} not found"
    else:
        error = message = str(exc.detail)
    return JSONResponse(status_code=exc.status_code, headers=getattr(exc, "headers", None), content={
        "error": error, "message": message, "timestamp": now_iso(), "requestId": _request_id(request),
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"[SERVER] Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={
        "error": "Internal Server Error", "message": "Internal Server Error",
        "timestamp": now_iso(), "requestId": _request_id(request),
    })


def _audit(request: Request, user: dict, resource: str, action: str, resource_id: str = None,
           details: dict = None):
    log_data_access(resource, resource_id, action, user["id"], details=details,
                    **request_context(request))


# ============================================================
# HEALTH
# ============================================================
@app.get(f"{API_PREFIX}/health")
async def health():
    return {"status": "healthy", "timestamp": now_iso(), "version": APP_VERSION,
            "environment": ENVIRONMENT, "uptime": round(time.monotonic() - START_TIME, 3)}


@app.get(f"{API_PREFIX}/health/ready")
async def health_ready():
    try:
        ping_db()
    except Exception as e:
        logger.error(f"[SERVER] Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={
            "status": "not_ready", "timestamp": now_iso(), "error": str(e)})
    return {"status": "ready", "timestamp": now_iso(),
            "checks": {"database": "healthy", "backend": "postgres" if DATABASE_URL else "file"}}


@app.get(f"{API_PREFIX}/health/live")
async def health_live():
    return {"status": "alive", "timestamp": now_iso(),
            "uptime": round(time.monotonic() - START_TIME, 3)}


# ============================================================
# AUTH
# ============================================================
@app.post(f"{API_PREFIX}/auth/register", status_code=201)
async def register(body: RegisterRequest, request: Request):
    user = create_user(body.email, body.password, body.name, DEFAULT_ROLE, body.organization_id)
    log_authentication("register", user["id"], "success", **request_context(request))
    return {**issue_tokens(user), "user": public_user(user)}


@app.post(f"{API_PREFIX}/auth/login")
async def login(body: LoginRequest, request: Request):
    ctx = request_context(request)
    try:
        user = authenticate(body.email, body.password)
    except HTTPException as e:
        log_authentication("login", None, "failure", error_message=e.detail, **ctx)
        raise
    log_authentication("login", user["id"], "success", **ctx)
    return {**issue_tokens(user), "user": public_user(user)}


@app.post(f"{API_PREFIX}/auth/refresh")
async def refresh(body: RefreshRequest, request: Request):
    ctx = request_context(request)
    try:
        payload = decode_refresh_token(body.refresh_token)
        user = get_user_by_id(payload["sub"])
        if not user or not user.get("isActive"):
            raise HTTPException(401, "Invalid refresh token")
    except HTTPException as e:
        log_audit_event("INVALID_REFRESH_TOKEN", "security", "token_refresh", outcome="failure",
                        error_message=e.detail, **ctx)
        raise
    log_authentication("token_refresh", user["id"], "success", **ctx)
    return {"accessToken": create_jwt(user), "tokenType": "Bearer",
            "expiresIn": JWT_EXPIRY_HOURS * 3600}


@app.post(f"{API_PREFIX}/auth/logout")
async def logout(request: Request, body: Optional[LogoutRequest] = None,
                 user: dict = Depends(get_current_user)):
    revoked = bool(body and body.refresh_token and revoke_refresh_token(body.refresh_token))
    log_authentication("logout", user["id"], "success", **request_context(request))
    return {"message": "Logged out successfully", "refreshTokenRevoked": revoked, "timestamp": now_iso()}


@app.get(f"{API_PREFIX}/auth/me")
async def me(user: dict = Depends(get_current_user)):
    return {"data": user}


@app.put(f"{API_PREFIX}/auth/me")
async def update_me(body: ProfileUpdate, request: Request, user: dict = Depends(get_current_user)):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    updated = update_user(user["id"], changes)
    _audit(request, user, "users", "update", user["id"], {"fields": sorted(changes)})
    return {"data": public_user(updated)}


@app.post(f"{API_PREFIX}/auth/change-password")
async def change_password(body: ChangePasswordRequest, request: Request,
                          user: dict = Depends(get_current_user)):
    ctx = request_context(request)
    stored = get_user_by_id(user["id"])
    if not verify_password(body.current_password, stored["passwordHash"]):
        log_audit_event("INVALID_PASSWORD_CHANGE", "security", "password_change", user_id=user["id"],
                        outcome="failure", details={"reason": "Invalid current password"}, **ctx)
        raise HTTPException(401, "Current password is incorrect")
    set_password(user["id"], body.new_password)
    log_authentication("password_change", user["id"], "success", **ctx)
    return {"message": "Password changed successfully", "timestamp": now_iso()}


# ============================================================
# USERS
# ============================================================
def _scoped_user(request: Request, actor: dict, user_id: str, action: str) -> dict:
    """Stored user `user_id`, if the actor may manage it; failures are audited."""
    target = get_user_by_id(user_id)
    if target is None:
        error = HTTPException(404, "User not found")
    elif actor["role"] != "super_admin" and target.get("organizationId") != actor.get("organizationId"):
        error = HTTPException(403, "Access denied: different organization")
    else:
        return target
    log_data_access("users", user_id, action, actor["id"], outcome="failure",
                    details={"error": error.detail}, **request_context(request))
    raise error


_USER_FIELDS = {"organization_id": "organizationId", "is_active": "isActive"}


def _role_level(role: str) -> int:
    return ROLE_PERMISSIONS[role]["level"]


@app.get(f"{API_PREFIX}/users")
async def get_users(request: Request, search: Optional[str] = None,
                    organization_id: Optional[str] = None,
                    limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
                    user: dict = Depends(require_permission("users", "read"))):
    if user["role"] == "super_admin":
        rows = list_users(organization_id, search, all_orgs=organization_id is None,
                          limit=limit, offset=offset)
    else:
        rows = list_users(user.get("organizationId"), search, limit=limit, offset=offset)
    _audit(request, user, "users", "read", "list", {"count": len(rows)})
    return {"data": [public_user(u) for u in rows],
            "meta": {"count": len(rows), "limit": limit, "offset": offset}}


@app.get(f"{API_PREFIX}/users/{{user_id}}")
async def get_user(user_id: str, request: Request,
                   user: dict = Depends(require_permission("users", "read"))):
    target = _scoped_user(request, user, user_id, "read")
    _audit(request, user, "users", "read", user_id)
    return {"data": public_user(target)}


@app.post(f"{API_PREFIX}/users", status_code=201)
async def create_user_account(body: UserCreate, request: Request,
                              user: dict = Depends(require_permission("users", "create"))):
    org_id = body.organization_id
    if user["role"] != "super_admin":
        if org_id is not None and org_id != user.get("organizationId"):
            raise HTTPException(403, "Access denied: different organization")
        org_id = user.get("organizationId")
    if _role_level(body.role) > _role_level(user["role"]):
        raise HTTPException(403, "Cannot assign a role above your own")
    created = create_user(body.email, body.password, body.name, body.role, org_id)
    _audit(request, user, "users", "create", created["id"], {"email": created["email"], "role": created["role"]})
    return {"data": public_user(created), "message": "User created successfully"}


@app.put(f"{API_PREFIX}/users/{{user_id}}")
async def update_user_account(user_id: str, body: UserUpdate, request: Request,
                              user: dict = Depends(require_permission("users", "update"))):
    _scoped_user(request, user, user_id, "update")
    fields = body.model_dump(exclude_unset=True)
    if user["role"] != "super_admin":
        fields.pop("role", None)
        fields.pop("organization_id", None)
    changes = {_USER_FIELDS.get(k, k): v for k, v in fields.items()}
    updated = update_user(user_id, changes)
    _audit(request, user, "users", "update", user_id, {"fields": sorted(changes)})
    return {"data": public_user(updated), "message": "User updated successfully"}


@app.delete(f"{API_PREFIX}/users/{{user_id}}", status_code=204)
async def delete_user_account(user_id: str, request: Request,
                              user: dict = Depends(require_permission("users", "delete"))):
    _scoped_user(request, user, user_id, "delete")
    if user_id == user["id"]:
        raise HTTPException(403, "Cannot delete your own account")
    deactivate_user(user_id)
    _audit(request, user, "users", "delete", user_id)
    return Response(status_code=204)


@app.post(f"{API_PREFIX}/users/{{user_id}}/reset-password")
async def reset_user_password(user_id: str, body: PasswordReset, request: Request,
                              user: dict = Depends(require_permission("users", "update"))):
    _scoped_user(request, user, user_id, "password_reset")
    set_password(user_id, body.new_password)
    _audit(request, user, "users", "password_reset", user_id)
    return {"message": "Password reset successfully", "timestamp": now_iso()}


# ============================================================
# STUBS: EXPORTS & MAP ANNOTATIONS
# ============================================================
@app.post(f"{API_PREFIX}/exports")
async def create_export(request: Request, user: dict = Depends(require_permission("exports", "create"))):
    _audit(request, user, "exports", "create", "create")
    return {"message": "Export functionality coming soon"}


@app.get(f"{API_PREFIX}/map_annotations")
async def list_map_annotations(request: Request,
                               user: dict = Depends(require_permission("map_annotations", "read"))):
    _audit(request, user, "map_annotations", "read", "list")
    return {"data": []}


# ============================================================
# REFERENCE DATA
# ============================================================
@app.get(f"{API_PREFIX}/diseases")
async def list_diseases(request: Request, user: dict = Depends(require_permission("diseases", "read"))):
    _audit(request, user, "diseases", "read", "list")
    return {"data": DISEASES, "meta": {"count": len(DISEASES)}}


@app.get(f"{API_PREFIX}/organizations")
async def list_organizations(request: Request,
                             user: dict = Depends(require_permission("organizations", "read"))):
    _audit(request, user, "organizations", "read", "list")
    return {"data": ORGANIZATIONS, "meta": {"count": len(ORGANIZATIONS)}}


@app.get(f"{API_PREFIX}/organizations/{{org_id}}")
async def get_organization(org_id: str, request: Request,
                           user: dict = Depends(require_permission("organizations", "read"))):
    org = next((o for o in ORGANIZATIONS if o["id"] == org_id), None)
    if not org:
        raise HTTPException(404, "Organization not found")
    _audit(request, user, "organizations", "read", org_id)
    return {"data": org}


# ============================================================
# OUTBREAKS
# ============================================================
@app.get(f"{API_PREFIX}/outbreaks")
async def list_outbreaks(
    request: Request,
    lat_min: Optional[float] = Query(None, ge=-90, le=90),
    lat_max: Optional[float] = Query(None, ge=-90, le=90),
    lng_min: Optional[float] = Query(None, ge=-180, le=180),
    lng_max: Optional[float] = Query(None, ge=-180, le=180),
    days: int = Query(outbreak_store.DEFAULT_LOOKBACK_DAYS, ge=1, le=365),
    disease_type: Optional[str] = None,
    severity_min: Optional[int] = Query(None, ge=1, le=5),
    user: dict = Depends(require_permission("outbreak_reports", "read")),
):
    try:
        rows = outbreak_store.list_outbreaks(lat_min, lat_max, lng_min, lng_max, days,
                                             disease_type, severity_min)
    except ValueError as e:
        raise HTTPException(400, str(e))
    _audit(request, user, "outbreak_reports", "read", "list", {"count": len(rows)})
    return {"data": rows, "meta": {
        "total": len(rows), "generatedAt": now_iso(),
        "bounds": {"lat_min": lat_min, "lat_max": lat_max, "lng_min": lng_min, "lng_max": lng_max},
    }}


@app.get(f"{API_PREFIX}/outbreaks/stats")
async def get_outbreak_stats(request: Request, days_back: int = Query(30, ge=1, le=365),
                             user: dict = Depends(require_permission("outbreak_reports", "read"))):
    _audit(request, user, "outbreak_reports", "read", "stats")
    return {"data": outbreak_store.outbreak_stats(days_back)}


@app.get(f"{API_PREFIX}/outbreaks/{{outbreak_id}}")
async def get_outbreak(outbreak_id: str, request: Request,
                       user: dict = Depends(require_permission("outbreak_reports", "read"))):
    outbreak = outbreak_store.get_outbreak(outbreak_id)
    if not outbreak:
        raise HTTPException(404, "Outbreak not found")
    _audit(request, user, "outbreak_reports", "read", outbreak_id)
    return {"data": outbreak}


@app.post(f"{API_PREFIX}/outbreaks", status_code=201)
async def create_outbreak(body: OutbreakCreate, request: Request,
                          user: dict = Depends(require_permission("outbreak_reports", "create"))):
    outbreak = outbreak_store.create_outbreak(body, created_by=user["id"])
    _audit(request, user, "outbreak_reports", "create", outbreak["id"],
           {"diseaseType": outbreak["diseaseType"], "caseCount": outbreak["caseCount"]})
    await broadcast_outbreak_change(outbreak, "created")
    return {"data": outbreak, "message": "Outbreak created successfully"}


@app.put(f"{API_PREFIX}/outbreaks/{{outbreak_id}}")
async def update_outbreak(outbreak_id: str, body: OutbreakUpdate, request: Request,
                          user: dict = Depends(require_permission("outbreak_reports", "update"))):
    outbreak = outbreak_store.update_outbreak(outbreak_id, body)
    if not outbreak:
        raise HTTPException(404, "Outbreak not found")
    _audit(request, user, "outbreak_reports", "update", outbreak_id,
           {"fields": sorted(body.model_dump(exclude_unset=True))})
    await broadcast_outbreak_change(outbreak, "updated")
    return {"data": outbreak, "message": "Outbreak updated successfully"}


@app.delete(f"{API_PREFIX}/outbreaks/{{outbreak_id}}", status_code=204)
async def delete_outbreak(outbreak_id: str, request: Request,
                          user: dict = Depends(require_permission("outbreak_reports", "delete"))):
    outbreak = outbreak_store.delete_outbreak(outbreak_id)
    if not outbreak:
        raise HTTPException(404, "Outbreak not found")
    _audit(request, user, "outbreak_reports", "delete", outbreak_id)
    await broadcast_outbreak_change(outbreak, "deleted")
    return Response(status_code=204)


# ============================================================
# PREDICTIONS
# ============================================================
@app.post(f"{API_PREFIX}/predictions", status_code=201)
async def create_prediction(body: PredictionCreate, request: Request,
                            user: dict = Depends(require_permission("predictions", "create"))):
    region = body.region().model_dump()
    prediction = prediction_service.generate_prediction(region, body.horizon_days, body.disease_type)
    _audit(request, user, "ml_predictions", "create", prediction["id"],
           {"region": region, "horizon_days": body.horizon_days, "disease_type": body.disease_type})
    return {"data": prediction, "message": "Prediction generated successfully"}


@app.get(f"{API_PREFIX}/predictions/models/list")
async def list_models(request: Request, user: dict = Depends(require_permission("predictions", "read"))):
    models = prediction_service.list_models()
    _audit(request, user, "ml_models", "read", "list")
    return {"data": models, "meta": {"count": len(models)}}


@app.post(f"{API_PREFIX}/predictions/models/{{model_id}}/retrain")
async def retrain_model(model_id: str, request: Request,
                        user: dict = Depends(require_permission("models", "retrain"))):
    result = prediction_service.retrain_model(model_id)
    if result is None:
        raise HTTPException(404, "Model not found")
    _audit(request, user, "ml_models", "retrain", model_id)
    return {"data": result, "message": "Model retraining initiated"}


@app.get(f"{API_PREFIX}/predictions/performance/metrics")
async def model_performance(request: Request, user: dict = Depends(require_permission("predictions", "read"))):
    _audit(request, user, "ml_models", "read", "performance")
    return {"data": prediction_service.performance_metrics()}


@app.get(f"{API_PREFIX}/predictions/{{prediction_id}}")
async def get_prediction(prediction_id: str, request: Request,
                         user: dict = Depends(require_permission("predictions", "read"))):
    prediction = prediction_service.get_prediction(prediction_id)
    if not prediction:
        raise HTTPException(404, "Prediction not found")
    _audit(request, user, "ml_predictions", "read", prediction_id)
    return {"data": prediction}


# ============================================================
# SYMPTOMS & ALERTS
# ============================================================
@app.post(f"{API_PREFIX}/symptoms/reports", status_code=201)
async def submit_symptom_report(body: SymptomSubmission, request: Request,
                                user: dict = Depends(require_permission("symptom_reports", "create"))):
    report = symptoms.submit_report(body)
    _audit(request, user, "symptom_reports", "create", report["id"])
    return {"success": True, "reportId": report["id"], "data": report,
            "message": "Symptom report submitted successfully"}


@app.get(f"{API_PREFIX}/symptoms/reports")
async def list_symptom_reports(request: Request, days: int = Query(7, ge=1, le=90),
                               user: dict = Depends(require_permission("symptom_reports", "read"))):
    rows = symptoms.list_reports(days)
    _audit(request, user, "symptom_reports", "read", "list", {"count": len(rows)})
    return {"data": rows, "meta": {"count": len(rows)}}


@app.post(f"{API_PREFIX}/symptoms/analyze")
async def analyze_symptoms(body: SymptomAnalysisRequest, request: Request,
                           user: dict = Depends(require_permission("symptom_reports", "create"))):
    result = await symptoms.analyze_symptoms(body.symptoms, body.severity)
    _audit(request, user, "symptom_reports", "read", "analyze")
    return result


@app.post(f"{API_PREFIX}/symptoms/detect")
async def detect_symptom_clusters(request: Request,
                                  user: dict = Depends(require_permission("outbreak_reports", "create"))):
    result = symptoms.detect_clusters()
    _audit(request, user, "symptom_clusters", "create", "detect",
           {"clustersFound": result["clustersFound"]})
    return result


@app.get(f"{API_PREFIX}/symptoms/clusters")
async def list_symptom_clusters(request: Request,
                                user: dict = Depends(require_permission("health_alerts", "read"))):
    rows = symptoms.active_clusters()
    _audit(request, user, "symptom_clusters", "read", "list")
    return {"data": rows, "meta": {"count": len(rows)}}


@app.get(f"{API_PREFIX}/alerts")
async def list_alerts(request: Request, limit: Optional[int] = Query(None, ge=1, le=500),
                      user: dict = Depends(require_permission("health_alerts", "read"))):
    rows = symptoms.list_alerts(limit)
    _audit(request, user, "health_alerts", "read", "list")
    return {"data": rows, "meta": {"count": len(rows)}}


# ============================================================
# AUDIT LOGS & SYSTEM
# ============================================================
@app.get(f"{API_PREFIX}/audit_logs")
async def list_audit_logs(
    request: Request,
    user_id: Optional[str] = None, action: Optional[str] = None,
    resource_type: Optional[str] = None, resource_id: Optional[str] = None,
    start_date: Optional[str] = None, end_date: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000), offset: int = Query(0, ge=0),
    user: dict = Depends(require_permission("audit_logs", "read")),
):
    rows = get_audit_logs(user_id, action, resource_type, resource_id, start_date, end_date,
                          limit, offset)
    _audit(request, user, "audit_logs", "read", "list")
    return {"data": rows, "meta": {"count": len(rows), "limit": limit, "offset": offset}}


@app.post(f"{API_PREFIX}/system/notices", status_code=202)
async def post_system_notice(body: SystemNotice, request: Request,
                             user: dict = Depends(require_permission("system", "admin"))):
    await notify_system(body.kind, body.message)
    _audit(request, user, "system", "create", f"notice:{body.kind}")
    return {"message": f"system:{body.kind} broadcast"}


@app.get(f"{API_PREFIX}/metrics")
async def metrics():
    stats = outbreak_store.outbreak_stats(days_back=1)
    times = list(_response_times)
    return {
        "apiResponseTime": round(sum(times) / len(times), 2) if times else 0,
        "concurrentUsers": len(live_connections()),
        "dataPoints": stats["totalOutbreaks"],
        "totalCases24h": stats["totalCases"],
        "systemHealth": {"status": "healthy", "uptime": round(time.monotonic() - START_TIME, 3)},
        "timestamp": now_iso(),
    }


# ============================================================
# ASGI APP (REST + Socket.IO)
# ============================================================
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app)


def main():
    import uvicorn
    setup_logging()
    uvicorn.run("symptomap.server:asgi_app", host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()

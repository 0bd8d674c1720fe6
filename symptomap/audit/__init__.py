"""
SymptoMap — Audit Logging
Append-only record of who did what, to which resource, with what outcome.
Writes never raise: a failed audit write is logged and the request goes on.
"""
from loguru import logger

from symptomap.db import get_db, save_db, new_id, now_iso

EVENT_CATEGORIES = ("authentication", "authorization", "data_access",
                    "data_modification", "system", "security", "business")
OUTCOMES = ("success", "failure", "error")

_MODIFYING_ACTIONS = {"create", "update", "delete", "retrain", "password_reset"}


def request_context(request) -> dict:
    """Pull ip address and user agent off a request (or socket environ)."""
    if request is None:
        return {"ip_address": None, "user_agent": None}
    client = getattr(request, "client", None)
    return {"ip_address": client.host if client else None,
            "user_agent": request.headers.get("User-Agent")}


def log_audit_event(event_type: str, category: str, action: str, *,
                    user_id: str = None, resource_type: str = None, resource_id: str = None,
                    outcome: str = "success", details: dict = None, error_message: str = None,
                    ip_address: str = None, user_agent: str = None) -> dict:
    entry = {
        "id": new_id(),
        "eventType": event_type,
        "eventCategory": category if category in EVENT_CATEGORIES else "system",
        "action": action,
        "userId": user_id,
        "resourceType": resource_type,
        "resourceId": resource_id,
        "outcome": outcome if outcome in OUTCOMES else "error",
        "details": details or {},
        "errorMessage": error_message,
        "ipAddress": ip_address,
        "userAgent": user_agent,
        "createdAt": now_iso(),
    }
    try:
        db = get_db()
        db["audit_logs"].append(entry)
        save_db(db)
    except Exception as e:
        logger.error(f"[AUDIT] Failed to log audit event {event_type}: {e}")
    return entry


def log_data_access(resource_type: str, resource_id: str, action: str, user_id: str,
                    ip_address: str = None, user_agent: str = None, outcome: str = "success",
                    details: dict = None) -> dict:
    """Audit a read or write against a resource on behalf of a user."""
    category = "data_modification" if action in _MODIFYING_ACTIONS else "data_access"
    return log_audit_event(
        f"DATA_{action.upper()}", category, action,
        user_id=user_id, resource_type=resource_type, resource_id=resource_id,
        outcome=outcome, details=details, ip_address=ip_address, user_agent=user_agent)


def log_authentication(action: str, user_id: str, outcome: str, *, error_message: str = None,
                       ip_address: str = None, user_agent: str = None) -> dict:
    event = "AUTHENTICATION_SUCCESS" if outcome == "success" else "AUTHENTICATION_FAILURE"
    return log_audit_event(event, "authentication", action, user_id=user_id or None,
                           resource_type="user", resource_id=user_id or None, outcome=outcome,
                           error_message=error_message, ip_address=ip_address, user_agent=user_agent)


def get_audit_logs(user_id: str = None, action: str = None, resource_type: str = None,
                   resource_id: str = None, start_date: str = None, end_date: str = None,
                   limit: int = None, offset: int = 0) -> list:
    """Newest-first audit entries matching every given filter."""
    rows = get_db().get("audit_logs", [])
    if user_id:
        rows = [r for r in rows if r.get("userId") == user_id]
    if action:
        rows = [r for r in rows if r.get("action") == action]
    if resource_type:
        rows = [r for r in rows if r.get("resourceType") == resource_type]
    if resource_id:
        rows = [r for r in rows if r.get("resourceId") == resource_id]
    if start_date:
        rows = [r for r in rows if r.get("createdAt", "") >= start_date]
    if end_date:
        rows = [r for r in rows if r.get("createdAt", "") <= end_date]
    rows = sorted(rows, key=lambda r: r.get("createdAt", ""), reverse=True)
    rows = rows[offset or 0:]
    return rows[:limit] if limit else rows

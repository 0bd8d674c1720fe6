"""
SymptoMap — Authentication & Permissions
JWT tokens, password hashing, user store, resource:action permission checks.
"""
from datetime import datetime, timedelta, timezone
from fastapi import Request, HTTPException

from symptomap.config import (
    JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRY_HOURS, JWT_REFRESH_SECRET, REFRESH_EXPIRY_DAYS,
    BCRYPT_ROUNDS, ROLE_PERMISSIONS, DEFAULT_ROLE
)
from symptomap.db import get_db, save_db, new_id, now_iso
from symptomap.audit import log_audit_event, log_authentication, request_context

# ============================================================
# PASSWORD HASHING
# ============================================================
import bcrypt

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())

# ============================================================
# JWT
# ============================================================
import jwt as pyjwt

def create_jwt(user: dict, expires_in: timedelta = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user["id"], "email": user["email"], "name": user.get("name", ""),
        "role": user["role"],
        "exp": now + (expires_in or timedelta(hours=JWT_EXPIRY_HOURS)),
        "iat": now
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")

# ---------- refresh tokens ----------
def create_refresh_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user["id"], "type": "refresh", "jti": new_id(),
               "exp": now + timedelta(days=REFRESH_EXPIRY_DAYS), "iat": now}
    return pyjwt.encode(payload, JWT_REFRESH_SECRET, algorithm=JWT_ALGORITHM)

def decode_refresh_token(token: str) -> dict:
    """Payload of a live, unrevoked refresh token, else 401 "Invalid refresh token"."""
    try:
        payload = pyjwt.decode(token, JWT_REFRESH_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid refresh token")
    if payload.get("type") != "refresh" or payload.get("jti") in get_db()["revoked_tokens"]:
        raise HTTPException(401, "Invalid refresh token")
    return payload

def revoke_refresh_token(token: str) -> bool:
    """Blacklist a refresh token; False if it was not a valid one."""
    try:
        payload = decode_refresh_token(token)
    except HTTPException:
        return False
    db = get_db()
    db["revoked_tokens"].append(payload["jti"])
    save_db(db)
    return True

def issue_tokens(user: dict) -> dict:
    return {"accessToken": create_jwt(user), "refreshToken": create_refresh_token(user),
            "tokenType": "Bearer", "expiresIn": JWT_EXPIRY_HOURS * 3600}

# ============================================================
# USER STORE
# ============================================================
def get_user_by_id(user_id: str) -> dict:
    return next((u for u in get_db().get("users", []) if u["id"] == user_id), None)

def get_user_by_email(email: str) -> dict:
    email = (email or "").strip().lower()
    return next((u for u in get_db().get("users", []) if u["email"] == email), None)

def create_user(email: str, password: str, name: str = "", role: str = DEFAULT_ROLE,
                organization_id: str = None) -> dict:
    if role not in ROLE_PERMISSIONS:
        raise ValueError(f"Unknown role: {role}")
    if get_user_by_email(email):
        raise HTTPException(409, "User with this email already exists")
    user = {
        "id": new_id(), "email": email.strip().lower(), "name": name,
        "passwordHash": hash_password(password), "role": role,
        "organizationId": organization_id, "isActive": True,
        "createdAt": now_iso(), "lastLogin": None,
    }
    db = get_db()
    db["users"].append(user)
    save_db(db)
    return user

def authenticate(email: str, password: str) -> dict:
    """Return the user for valid credentials, else raise 401."""
    user = get_user_by_email(email)
    if not user or not user.get("isActive") or not verify_password(password, user["passwordHash"]):
        raise HTTPException(401, "Invalid credentials")
    db = get_db()
    for u in db["users"]:
        if u["id"] == user["id"]:
            u["lastLogin"] = now_iso()
            user = u
    save_db(db)
    return user

def public_user(user: dict) -> dict:
    return {"id": user["id"], "email": user["email"], "name": user.get("name", ""),
            "role": user["role"], "organizationId": user.get("organizationId"),
            "isActive": user.get("isActive", True), "lastLogin": user.get("lastLogin"),
            "createdAt": user.get("createdAt"), "updatedAt": user.get("updatedAt")}

def list_users(organization_id: str = None, search: str = None, all_orgs: bool = False,
               limit: int = 50, offset: int = 0) -> list:
    """Users of one organization (or every organization), optionally matching `search`."""
    q = (search or "").strip().lower()
    rows = [u for u in get_db().get("users", [])
            if (all_orgs or u.get("organizationId") == organization_id)
            and (not q or q in u["email"] or q in (u.get("name") or "").lower())]
    rows.sort(key=lambda u: u.get("createdAt", ""))
    return rows[offset:offset + limit]

def update_user(user_id: str, changes: dict) -> dict:
    """Apply field changes to a stored user; None if no such user."""
    if "role" in changes and changes["role"] not in ROLE_PERMISSIONS:
        raise ValueError(f"Unknown role: {changes['role']}")
    db = get_db()
    user = next((u for u in db["users"] if u["id"] == user_id), None)
    if user is None:
        return None
    user.update(changes)
    user["updatedAt"] = now_iso()
    save_db(db)
    return user

def set_password(user_id: str, password: str) -> dict:
    return update_user(user_id, {"passwordHash": hash_password(password)})

def deactivate_user(user_id: str) -> dict:
    return update_user(user_id, {"isActive": False})

def get_permissions(role: str) -> list:
    return list(ROLE_PERMISSIONS.get(role, {}).get("permissions", []))

# ============================================================
# REQUEST HELPERS
# ============================================================
def _token_from_request(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    parts = auth.split(" ")
    return parts[1] if len(parts) == 2 and parts[0] == "Bearer" else ""

async def get_current_user(request: Request) -> dict:
    """Dependency: require a valid token for an active user."""
    ctx = request_context(request)
    try:
        token = _token_from_request(request)
        if not token:
            raise HTTPException(401, "Access token required")
        payload = decode_jwt(token)
        if payload.get("type"):
            raise HTTPException(401, "Invalid token")
        user = get_user_by_id(payload.get("sub"))
        if not user or not user.get("isActive"):
            raise HTTPException(401, "User not found or inactive")
    except HTTPException as e:
        log_authentication("token_validation", None, "failure", error_message=e.detail, **ctx)
        raise
    return {"id": user["id"], "email": user["email"], "name": user.get("name", ""),
            "role": user["role"], "organizationId": user.get("organizationId"),
            "permissions": get_permissions(user["role"])}

# ============================================================
# PERMISSION DEPENDENCY
# ============================================================
def require_permission(resource: str, action: str):
    """Dependency: require the `resource:action` permission."""
    permission = f"{resource}:{action}"

    async def checker(request: Request):
        user = await get_current_user(request)
        if permission not in user["permissions"]:
            log_audit_event("AUTHORIZATION_FAILURE", "authorization", "permission_check",
                            user_id=user["id"], resource_type=resource, outcome="failure",
                            details={"requiredPermission": permission, "userRole": user["role"]},
                            **request_context(request))
            raise HTTPException(403, f"Required permission: {permission}")
        return user
    return checker

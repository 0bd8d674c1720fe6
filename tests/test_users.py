from symptomap.auth import create_user, create_jwt, create_refresh_token, get_user_by_id, verify_password
from symptomap.audit import get_audit_logs


def bearer(user):
    return {"Authorization": f"Bearer {create_jwt(user)}"}


def login(client, email, password):
    r = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()


# ============================================================
# SESSION: REFRESH & LOGOUT
# ============================================================
def test_login_returns_refresh_token_that_mints_access_tokens(client, make_user):
    make_user("viewer", email="v@example.org", password="viewer-pass")
    tokens = login(client, "v@example.org", "viewer-pass")
    assert tokens["expiresIn"] == 3600

    r = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refreshToken"]})
    assert r.status_code == 200
    fresh = r.json()["accessToken"]
    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {fresh}"})
    assert me.json()["data"]["email"] == "v@example.org"
    assert get_audit_logs(action="token_refresh")[0]["outcome"] == "success"


def test_refresh_token_is_not_an_access_token(client, make_user):
    user, _ = make_user("viewer")
    r = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {create_refresh_token(user)}"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid token"


def test_access_token_is_not_a_refresh_token(client, make_user):
    _, access = make_user("viewer")
    r = client.post("/api/v1/auth/refresh", json={"refresh_token": access})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid refresh token"
    assert get_audit_logs(action="token_refresh")[0]["outcome"] == "failure"


def test_logout_revokes_refresh_token(client, make_user):
    make_user("viewer", email="out@example.org", password="viewer-pass")
    tokens = login(client, "out@example.org", "viewer-pass")
    auth = {"Authorization": f"Bearer {tokens['accessToken']}"}

    r = client.post("/api/v1/auth/logout", headers=auth, json={"refresh_token": tokens["refreshToken"]})
    assert r.status_code == 200
    assert r.json()["refreshTokenRevoked"] is True
    assert client.post("/api/v1/auth/refresh",
                       json={"refresh_token": tokens["refreshToken"]}).status_code == 401

    assert client.post("/api/v1/auth/logout", headers=auth).json()["refreshTokenRevoked"] is False
    assert client.post("/api/v1/auth/logout").status_code == 401


def test_refresh_for_deactivated_user_fails(client, make_user):
    user, _ = make_user("viewer")
    refresh = create_refresh_token(user)
    admin, _ = make_user("super_admin")
    assert client.delete(f"/api/v1/users/{user['id']}", headers=bearer(admin)).status_code == 204
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": refresh}).status_code == 401


# ============================================================
# OWN PROFILE
# ============================================================
def test_update_own_profile(client, make_user):
    user, token = make_user("viewer")
    r = client.put("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"},
                   json={"name": "Dr. Viewer"})
    assert r.status_code == 200
    assert r.json()["data"]["name"] == "Dr. Viewer"
    assert r.json()["data"]["role"] == "viewer"
    assert get_user_by_id(user["id"])["updatedAt"]


def test_change_password(client, make_user):
    user, token = make_user("analyst", email="pw@example.org", password="old-password")
    auth = {"Authorization": f"Bearer {token}"}

    r = client.post("/api/v1/auth/change-password", headers=auth,
                    json={"current_password": "wrong-password", "new_password": "new-password"})
    assert r.status_code == 401
    assert r.json()["message"] == "Current password is incorrect"
    assert get_audit_logs(action="password_change")[0]["outcome"] == "failure"

    r = client.post("/api/v1/auth/change-password", headers=auth,
                    json={"current_password": "old-password", "new_password": "short"})
    assert r.status_code == 400

    r = client.post("/api/v1/auth/change-password", headers=auth,
                    json={"current_password": "old-password", "new_password": "new-password"})
    assert r.status_code == 200
    assert verify_password("new-password", get_user_by_id(user["id"])["passwordHash"])
    login(client, "pw@example.org", "new-password")


# ============================================================
# USER ADMINISTRATION
# ============================================================
def test_user_routes_require_user_permissions(client, headers):
    assert client.get("/api/v1/users", headers=headers("analyst")).status_code == 403
    r = client.post("/api/v1/users", headers=headers("analyst"),
                    json={"email": "x@example.org", "password": "longenough"})
    assert r.status_code == 403


def test_admin_creates_and_lists_users_in_own_org(client):
    admin = create_user("admin@cdc.test", "admin-pass", "Admin", "admin", organization_id="1")
    create_user("other@who.test", "other-pass", "Other", "viewer", organization_id="2")

    r = client.post("/api/v1/users", headers=bearer(admin),
                    json={"email": "New@CDC.test", "password": "longenough", "role": "analyst"})
    assert r.status_code == 201
    created = r.json()["data"]
    assert (created["email"], created["role"], created["organizationId"]) == ("new@cdc.test", "analyst", "1")

    emails = {u["email"] for u in client.get("/api/v1/users", headers=bearer(admin)).json()["data"]}
    assert emails == {"admin@cdc.test", "new@cdc.test"}
    found = client.get("/api/v1/users", headers=bearer(admin), params={"search": "new"}).json()["data"]
    assert [u["email"] for u in found] == ["new@cdc.test"]
    assert all("passwordHash" not in u for u in found)

    entries = get_audit_logs(resource_type="users", action="create")
    assert entries[0]["resourceId"] == created["id"]


def test_admin_cannot_grant_higher_role_or_cross_org(client):
    admin = create_user("admin@cdc.test", "admin-pass", "Admin", "admin", organization_id="1")
    r = client.post("/api/v1/users", headers=bearer(admin),
                    json={"email": "boss@cdc.test", "password": "longenough", "role": "super_admin"})
    assert r.status_code == 403
    r = client.post("/api/v1/users", headers=bearer(admin),
                    json={"email": "w@who.test", "password": "longenough", "organization_id": "2"})
    assert r.status_code == 403

    outsider = create_user("other@who.test", "other-pass", "Other", "viewer", organization_id="2")
    r = client.get(f"/api/v1/users/{outsider['id']}", headers=bearer(admin))
    assert r.status_code == 403
    assert r.json()["message"] == "Access denied: different organization"
    failures = [e for e in get_audit_logs(resource_type="users") if e["outcome"] == "failure"]
    assert failures[0]["resourceId"] == outsider["id"]

    assert client.get("/api/v1/users/missing", headers=bearer(admin)).status_code == 404


def test_super_admin_sees_every_org(client):
    root = create_user("root@symptomap.test", "root-pass", "Root", "super_admin", organization_id="1")
    create_user("other@who.test", "other-pass", "Other", "viewer", organization_id="2")
    rows = client.get("/api/v1/users", headers=bearer(root)).json()["data"]
    assert len(rows) == 2
    rows = client.get("/api/v1/users", headers=bearer(root), params={"organization_id": "2"}).json()["data"]
    assert [u["email"] for u in rows] == ["other@who.test"]


def test_update_user_role_only_by_super_admin(client):
    admin = create_user("admin@cdc.test", "admin-pass", "Admin", "admin", organization_id="1")
    root = create_user("root@symptomap.test", "root-pass", "Root", "super_admin", organization_id="1")
    target = create_user("t@cdc.test", "target-pass", "Target", "viewer", organization_id="1")
    url = f"/api/v1/users/{target['id']}"

    r = client.put(url, headers=bearer(admin), json={"name": "Renamed", "role": "admin"})
    assert r.status_code == 200
    assert (r.json()["data"]["name"], r.json()["data"]["role"]) == ("Renamed", "viewer")

    r = client.put(url, headers=bearer(root), json={"role": "analyst", "is_active": False})
    assert (r.json()["data"]["role"], r.json()["data"]["isActive"]) == ("analyst", False)

    assert client.put(url, headers=bearer(admin), json={"role": "chief"}).status_code == 400


def test_delete_deactivates_and_blocks_self_delete(client):
    root = create_user("root@symptomap.test", "root-pass", "Root", "super_admin")
    target = create_user("t@example.org", "target-pass", "Target", "viewer")

    assert client.delete(f"/api/v1/users/{root['id']}", headers=bearer(root)).status_code == 403
    assert client.delete(f"/api/v1/users/{target['id']}", headers=bearer(root)).status_code == 204
    assert get_user_by_id(target["id"])["isActive"] is False
    assert client.get("/api/v1/auth/me", headers=bearer(target)).status_code == 401

    admin = create_user("admin@example.org", "admin-pass", "Admin", "admin")
    assert client.delete(f"/api/v1/users/{target['id']}", headers=bearer(admin)).status_code == 403


def test_admin_password_reset(client):
    admin = create_user("admin@cdc.test", "admin-pass", "Admin", "admin", organization_id="1")
    target = create_user("t@cdc.test", "target-pass", "Target", "viewer", organization_id="1")

    r = client.post(f"/api/v1/users/{target['id']}/reset-password", headers=bearer(admin),
                    json={"new_password": "reset-password"})
    assert r.status_code == 200
    assert r.json()["message"] == "Password reset successfully"
    login(client, "t@cdc.test", "reset-password")

    entry = get_audit_logs(resource_type="users", action="password_reset")[0]
    assert entry["eventCategory"] == "data_modification"

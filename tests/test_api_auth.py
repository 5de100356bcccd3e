"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

Uses the module-scoped api_client fixture from conftest.py. Every test
registers its own user so tests stay independent within the shared store.

Covers:
  - register: 201 with default role, 409 duplicate, 400 weak password,
    422 malformed body, 403 when self-registration is off, passwords past
    the bcrypt input limit refused, 503 when the store fails mid-request
  - passwords kept verbatim, edge whitespace included
  - login: tokens + no-store, identical 401s for unknown user / wrong password,
    423 lockout with the unlock time, 2FA required / invalid
  - bearer-protected routes: 401 without a token, /me, /me/permissions
  - refresh and logout semantics
  - password change revokes other sessions
  - permission-gated route: 403 for a plain user, 200 for admin
"""

from __future__ import annotations

import itertools

import pytest
from sqlalchemy.exc import OperationalError

PASSWORD = "Str0ng!Passw0rd"
_counter = itertools.count()


def _register(client, prefix="user"):
    n = next(_counter)
    username = f"{prefix}{n}"
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": username, "email": f"{username}@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _login(client, identifier, password=PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"identifier": identifier, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def session(api_client):
    """A freshly registered and logged-in user: (client, auth, user, tokens)."""
    client, auth = api_client
    user = _register(client)
    resp = _login(client, user["username"])
    assert resp.status_code == 200, resp.text
    return client, auth, user, resp.json()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_assigns_default_role(api_client):
    client, _ = api_client
    user = _register(client)
    assert user["roles"] == ["user"]
    assert user["is_active"] is True
    assert "password_hash" not in user


def test_register_duplicate_returns_409(api_client):
    client, _ = api_client
    user = _register(client)
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": user["username"], "email": "fresh@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_identity"


def test_register_weak_password_returns_400(api_client):
    client, _ = api_client
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": "weakling", "email": "weak@example.com", "password": "password"},
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "weak_password"
    assert "uppercase" in error["detail"]


def test_register_malformed_body_returns_422(api_client):
    client, _ = api_client
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": "x", "email": "not-an-email", "password": PASSWORD},
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_register_disabled(api_client, monkeypatch):
    client, _ = api_client
    settings = client.app.state.settings
    monkeypatch.setattr(
        client.app.state, "settings", settings.model_copy(update={"self_registration_enabled": False})
    )
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": "latecomer", "email": "late@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "registration_disabled"


@pytest.mark.parametrize(
    "password, status, code",
    [
        ("Aa1!" + "x" * 76, 422, "validation_error"),
        ("Aa1!" + "\u20ac" * 23, 400, "weak_password"),
    ],
)
def test_register_password_beyond_bcrypt_limit(api_client, password, status, code):
    client, _ = api_client
    n = next(_counter)
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": f"long{n}", "email": f"long{n}@example.com", "password": password},
    )
    assert resp.status_code == status
    assert resp.json()["error"]["code"] == code


def test_register_store_failure_returns_503(api_client, monkeypatch):
    client, auth = api_client

    def _db_down(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(auth.store, "role_names_for_user", _db_down)
    n = next(_counter)
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": f"outage{n}", "email": f"outage{n}@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "unavailable"


def test_password_edge_whitespace_preserved(api_client):
    client, auth = api_client
    n = next(_counter)
    padded = " " + PASSWORD + " "

    auth.register(f"cli{n}", f"cli{n}@example.com", padded)
    assert _login(client, f"cli{n}", padded).status_code == 200
    assert _login(client, f"cli{n}", PASSWORD).status_code == 401

    resp = client.post(
        "/api/v1/auth/register",
        json={"username": f" web{n} ", "email": f"web{n}@example.com", "password": padded},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["username"] == f"web{n}"
    assert auth.authenticate(f"web{n}", padded).user.username == f"web{n}"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_returns_tokens(api_client):
    client, auth = api_client
    user = _register(client)
    resp = _login(client, user["email"])
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900
    assert data["user"]["id"] == user["id"]
    assert data["user"]["roles"] == ["user"]
    assert auth.validate_token(data["access_token"]).session_id == data["session_id"]


def test_unknown_user_and_wrong_password_identical(api_client):
    client, _ = api_client
    user = _register(client)
    unknown = _login(client, "nobody-at-all")
    wrong = _login(client, user["username"], "Wr0ng!Password")
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert unknown.headers["WWW-Authenticate"] == "Bearer"


def test_lockout_returns_423_with_unlock_time(api_client):
    client, _ = api_client
    user = _register(client)
    for _ in range(5):
        assert _login(client, user["username"], "Wr0ng!Password").status_code == 401
    resp = _login(client, user["username"])
    assert resp.status_code == 423
    error = resp.json()["error"]
    assert error["code"] == "account_locked"
    assert error["detail"]


def test_two_factor_flow(api_client):
    client, auth = api_client
    user = _register(client)
    auth.credentials.enable_two_factor(user["id"], "JBSWY3DPEHPK3PXP")

    missing = _login(client, user["username"])
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "two_factor_required"

    wrong = _login(client, user["username"], two_factor_code="000000")
    assert wrong.json()["error"]["code"] == "invalid_two_factor_code"

    assert _login(client, user["username"], two_factor_code="123456").status_code == 200


def test_disabled_account_returns_403(api_client):
    client, auth = api_client
    user = _register(client)
    auth.credentials.set_active(user["id"], False)
    resp = _login(client, user["username"])
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "account_disabled"


# ---------------------------------------------------------------------------
# Bearer-protected routes
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer garbage"}, {"Authorization": "Basic abc"}])
def test_me_requires_valid_token(api_client, headers):
    client, _ = api_client
    resp = client.get("/api/v1/auth/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_me_returns_claims(session):
    client, _, user, tokens = session
    resp = client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 200
    data = resp.json()
    assert data["user_id"] == user["id"]
    assert data["username"] == user["username"]
    assert data["roles"] == ["user"]
    assert data["session_id"] == tokens["session_id"]


def test_my_permissions(session):
    client, auth, user, tokens = session
    role = f"tier{next(_counter)}"
    auth.rbac.ensure_role(role)
    auth.rbac.grant(role, "domain", "create")
    auth.rbac.grant(role, "dns", "update")
    auth.rbac.assign_role(user["id"], role)

    resp = client.get("/api/v1/auth/me/permissions", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 200
    assert resp.json()["permissions"] == [
        {"resource": "dns", "action": "update"},
        {"resource": "domain", "action": "create"},
    ]


def test_user_permissions_route_is_gated(session):
    client, auth, user, tokens = session
    resp = client.get(f"/api/v1/auth/users/{user['id']}/permissions", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "permission_denied"

    admin = _register(client, "admin")
    auth.rbac.ensure_role("admin", is_system=True)
    auth.rbac.assign_role(admin["id"], "admin")
    admin_token = _login(client, admin["username"]).json()["access_token"]
    resp = client.get(f"/api/v1/auth/users/{user['id']}/permissions", headers=_bearer(admin_token))
    assert resp.status_code == 200
    assert resp.json()["user_id"] == user["id"]


# ---------------------------------------------------------------------------
# Refresh and logout
# ---------------------------------------------------------------------------


def test_refresh_keeps_session(session):
    client, _, _, tokens = session
    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    data = resp.json()
    assert data["session_id"] == tokens["session_id"]
    assert data["refresh_token"] == tokens["refresh_token"]


def test_refresh_with_unknown_token(api_client):
    client, _ = api_client
    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_refresh_token"


def test_logout_then_refresh_fails(session):
    client, _, _, tokens = session
    headers = _bearer(tokens["access_token"])

    first = client.post("/api/v1/auth/logout", headers=headers)
    assert first.status_code == 200
    assert first.json()["revoked"] is True

    # The access token itself stays valid until it expires; logging out again is harmless.
    second = client.post("/api/v1/auth/logout", headers=headers)
    assert second.status_code == 200
    assert second.json()["revoked"] is False

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


def test_password_change_revokes_other_sessions(session):
    client, _, user, tokens = session
    other = _login(client, user["username"]).json()

    resp = client.post(
        "/api/v1/auth/password",
        json={"current_password": PASSWORD, "new_password": "N3w!Passw0rd"},
        headers=_bearer(tokens["access_token"]),
    )
    assert resp.status_code == 200
    assert resp.json()["revoked_sessions"] == 1

    kept = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert kept.status_code == 200
    gone = client.post("/api/v1/auth/refresh", json={"refresh_token": other["refresh_token"]})
    assert gone.status_code == 401
    assert _login(client, user["username"], "N3w!Passw0rd").status_code == 200


def test_password_change_wrong_current(session):
    client, _, _, tokens = session
    resp = client.post(
        "/api/v1/auth/password",
        json={"current_password": "Wr0ng!Password", "new_password": "N3w!Passw0rd"},
        headers=_bearer(tokens["access_token"]),
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_credentials"

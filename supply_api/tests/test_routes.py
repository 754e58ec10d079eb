"""
Tests for the HTTP surface: /auth/login, /auth/callback, /auth/logout,
/auth/refresh, /api/v1/me (+ /user) and /health. The provider is a FakeProvider;
tokens and accounts are real.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import FakeProvider, add_user, make_settings, start_login
from supply_api.login import MSG_PENDING, MSG_REGISTERED
from supply_api.main import create_app
from supply_api.models import AuthAuditLog, User
from supply_api.oidc import OIDCExchangeError, OIDCProviderUnavailable, OIDCVerificationError
from supply_api.pkce import pkce_challenge
from supply_api.tokens import JWTManager


def _user_count(db) -> int:
    return db.scalar(select(func.count()).select_from(User))


def _callback(client, state, code="auth-code", **extra):
    return client.get("/auth/callback", params={"code": code, "state": state, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


# --- /auth/login ---


def test_login_redirects_with_pkce_and_sets_flow_cookie(client):
    r = client.get("/auth/login", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"].startswith("https://idp.example/authorize?")
    assert "code_challenge_method=S256" in r.headers["location"]
    cookie = r.headers["set-cookie"]
    assert cookie.startswith("auth_flow=")
    assert "HttpOnly" in cookie
    assert "Path=/auth" in cookie
    assert "samesite=lax" in cookie.lower()


def test_login_states_are_unique(client, app):
    states = {start_login(TestClient(app))["state"] for _ in range(5)}
    assert len(states) == 5


def test_login_replaces_previous_attempt(client, app):
    start_login(client)
    start_login(client)
    assert len(app.state.flow_store) == 1


def test_login_without_oidc_returns_503(settings):
    with TestClient(create_app(settings)) as client:
        r = client.get("/auth/login", follow_redirects=False)
        assert r.status_code == 503
        body = r.json()
        assert body["success"] is False
        assert "OIDC_ISSUER" in body["error"]
        assert client.get("/auth/callback", params={"code": "c", "state": "s"}).status_code == 503


def test_lifespan_leaves_oidc_disabled_when_unconfigured(settings):
    with TestClient(create_app(settings)) as client:
        r = client.get("/health")
        assert r.json() == {"success": True, "data": {"status": "healthy", "oidc_configured": False}}
        assert client.get("/auth/login", follow_redirects=False).status_code == 503


def test_login_rate_limited(provider):
    app = create_app(make_settings(rate_limit_login_per_minute=2), oidc_provider=provider)
    with TestClient(app) as client:
        start_login(client)
        start_login(client)
        r = client.get("/auth/login", follow_redirects=False)
    assert r.status_code == 429
    assert int(r.headers["retry-after"]) >= 1
    assert r.json() == {"success": False, "error": "Too many requests. Please try again later."}


# --- /auth/callback ---


def test_callback_active_account_issues_token(client, app, provider):
    user_id = add_user(app, oidc_sub="oidc|alice", username="alice", email="alice@example.org", trust_points=5)
    params = start_login(client)

    r = _callback(client, params["state"])
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["token_type"] == "Bearer"
    assert data["expires_in"] == 168 * 3600
    assert data["user"]["id"] == user_id
    assert data["user"]["trust_points"] == 5

    claims = app.state.jwt_manager.validate(data["access_token"])
    assert claims.user_id == user_id
    assert claims.oidc_sub == "oidc|alice"
    assert claims.username == "alice"
    assert claims.email == "alice@example.org"
    assert claims.is_active is True

    code, verifier = provider.exchanges[0]
    assert code == "auth-code"
    assert pkce_challenge(verifier) == params["code_challenge"]
    assert len(app.state.flow_store) == 0
    assert "auth_flow" not in client.cookies


def test_callback_state_mismatch_rejected_and_attempt_kept(client, app, provider):
    add_user(app, oidc_sub="oidc|alice", username="alice")
    params = start_login(client)

    r = _callback(client, "not-the-state")
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Invalid state parameter"}
    assert provider.exchanges == []

    assert _callback(client, params["state"]).status_code == 200


def test_callback_without_flow_cookie_rejected(client, app, provider):
    params = start_login(client)
    r = _callback(TestClient(app), params["state"])
    assert r.status_code == 400
    assert provider.exchanges == []


def test_callback_cannot_be_replayed(client, provider):
    params = start_login(client)
    provider.exchange_error = OIDCExchangeError("invalid_grant")
    assert _callback(client, params["state"]).status_code == 401

    provider.exchange_error = None
    r = _callback(client, params["state"])
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid state parameter"
    assert len(provider.exchanges) == 1


def test_callback_provider_error(client, provider):
    params = start_login(client)
    r = client.get(
        "/auth/callback",
        params={"state": params["state"], "error": "access_denied", "error_description": "User cancelled"},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "Authorization failed: User cancelled"
    assert provider.exchanges == []


def test_callback_missing_code(client):
    params = start_login(client)
    r = client.get("/auth/callback", params={"state": params["state"]})
    assert r.status_code == 400
    assert r.json()["error"] == "Missing authorization code"


def test_callback_provider_unreachable(client, provider):
    provider.exchange_error = OIDCProviderUnavailable("timeout")
    params = start_login(client)
    r = _callback(client, params["state"])
    assert r.status_code == 502
    assert r.json()["error"] == "Identity provider unavailable"


def test_callback_id_token_invalid(client, provider, db):
    provider.verify_error = OIDCVerificationError("bad signature")
    params = start_login(client)
    r = _callback(client, params["state"])
    assert r.status_code == 401
    assert r.json()["error"] == "Failed to verify ID token"
    assert _user_count(db) == 0


def test_callback_missing_sub_creates_nothing(client, provider, db):
    provider.claims = {"email": "nosub@example.org", "name": "nosub"}
    params = start_login(client)
    r = _callback(client, params["state"])
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid OIDC token: missing sub claim"
    assert _user_count(db) == 0


def test_first_login_registers_pending_account(client, app, db):
    r = _callback(client, start_login(client)["state"])
    assert r.status_code == 403
    assert r.json() == {"success": False, "error": MSG_REGISTERED}
    user = db.scalar(select(User).where(User.oidc_sub == "oidc|alice"))
    assert user.is_active is False
    assert user.username == "alice"
    assert user.email == "alice@example.org"
    assert user.trust_points == 0

    r = _callback(client, start_login(client)["state"])
    assert r.status_code == 403
    assert r.json()["error"] == MSG_PENDING
    assert _user_count(db) == 1


def test_login_after_activation(client, app, db):
    _callback(client, start_login(client)["state"])
    user = db.scalar(select(User).where(User.oidc_sub == "oidc|alice"))
    user.is_active = True
    db.commit()

    r = _callback(client, start_login(client)["state"])
    assert r.status_code == 200
    assert r.json()["data"]["user"]["is_active"] is True


def test_first_login_with_taken_username(client, app, db):
    add_user(app, oidc_sub="oidc|someone-else", username="alice")
    r = _callback(client, start_login(client)["state"])
    assert r.status_code == 403
    user = db.scalar(select(User).where(User.oidc_sub == "oidc|alice"))
    assert user.username == "oidc|alice"


def test_first_login_when_every_username_is_taken(client, app, db):
    add_user(app, oidc_sub="oidc|someone", username="alice")
    add_user(app, oidc_sub="oidc|someone-else", username="oidc|alice")
    r = _callback(client, start_login(client)["state"])
    assert r.status_code == 403
    assert r.json()["error"] == MSG_REGISTERED
    user = db.scalar(select(User).where(User.oidc_sub == "oidc|alice"))
    assert user.username == "oidc|alice-2"


# --- /auth/logout ---


def test_logout_without_end_session(client):
    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert r.json() == {"success": True, "data": {"message": "Logged out successfully"}}


def test_logout_with_end_session(settings):
    provider = FakeProvider(end_session="https://idp.example/logout", post_logout_redirect="https://app.example/bye")
    with TestClient(create_app(settings, oidc_provider=provider)) as client:
        r = client.post("/auth/logout")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["message"] == "Logged out successfully"
    assert data["logout_url"].startswith("https://idp.example/logout?")
    assert "app.example%2Fbye" in data["logout_url"]


def test_logout_defaults_return_to_service_origin(settings):
    provider = FakeProvider(end_session="https://idp.example/logout")
    with TestClient(create_app(settings, oidc_provider=provider)) as client:
        data = client.post("/auth/logout").json()["data"]
    assert "testserver" in data["logout_url"]


def test_logout_drops_pending_login(client, app):
    params = start_login(client)
    assert client.post("/auth/logout").status_code == 200
    assert len(app.state.flow_store) == 0
    assert _callback(client, params["state"]).status_code == 400


def test_logout_without_oidc_still_succeeds(settings):
    with TestClient(create_app(settings)) as client:
        r = client.post("/auth/logout")
    assert r.status_code == 200
    assert "logout_url" not in r.json()["data"]


# --- /auth/refresh ---


def test_refresh_requires_header(client):
    r = client.post("/auth/refresh")
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Authorization header required"}


@pytest.mark.parametrize("header", ["Token abc", "Bearer", "Basic dXNlcjpwYXNz"])
def test_refresh_malformed_header(client, header):
    r = client.post("/auth/refresh", headers={"Authorization": header})
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid authorization header format. Expected: Bearer <token>"


@pytest.mark.parametrize("scheme", ["bearer", "BEARER"])
def test_bearer_scheme_is_case_insensitive(client, app, scheme):
    token = app.state.jwt_manager.mint(9, "", "oidc|eve", "eve", True)
    r = client.get("/api/v1/me", headers={"Authorization": f"{scheme} {token}"})
    assert r.status_code == 200
    assert r.json()["data"]["oidc_sub"] == "oidc|eve"


def test_refresh_expired_token(client, app):
    manager = app.state.jwt_manager
    old = manager.mint(3, "", "oidc|bob", "bob", True, now=datetime.now(timezone.utc) - timedelta(days=30))
    r = client.post("/auth/refresh", headers=_bearer(old))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["token_type"] == "Bearer"
    assert data["expires_in"] == manager.expires_in
    claims = manager.validate(data["access_token"])
    assert claims.user_id == 3
    assert claims.expires_at > datetime.now(timezone.utc)


def test_refresh_rejects_foreign_signature(client):
    foreign = JWTManager("some-other-secret-0123456789abcdefghijk", timedelta(hours=1))
    token = foreign.mint(3, "", "oidc|bob", "bob", True)
    r = client.post("/auth/refresh", headers=_bearer(token))
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Failed to refresh token"}


def test_refresh_rejects_inactive(client, app):
    token = app.state.jwt_manager.mint(3, "", "oidc|bob", "bob", False)
    assert client.post("/auth/refresh", headers=_bearer(token)).status_code == 401


def test_refresh_rate_limited(provider):
    app = create_app(make_settings(rate_limit_refresh_per_minute=1), oidc_provider=provider)
    token = app.state.jwt_manager.mint(3, "", "oidc|bob", "bob", True)
    with TestClient(app) as client:
        assert client.post("/auth/refresh", headers=_bearer(token)).status_code == 200
        assert client.post("/auth/refresh", headers=_bearer(token)).status_code == 429


# --- /api/v1/me and /user ---


@pytest.mark.parametrize("path", ["/api/v1/me", "/user"])
def test_me_returns_token_profile(client, app, path):
    token = app.state.jwt_manager.mint(9, "eve@example.org", "oidc|eve", "eve", True)
    r = client.get(path, headers=_bearer(token))
    assert r.status_code == 200
    assert r.json() == {
        "success": True,
        "data": {"id": 9, "email": "eve@example.org", "username": "eve", "oidc_sub": "oidc|eve", "is_active": True},
    }


@pytest.mark.parametrize("path", ["/api/v1/me", "/user"])
def test_me_requires_token(client, path):
    r = client.get(path)
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"


def test_me_rejects_expired_token(client, app):
    token = app.state.jwt_manager.mint(9, "", "oidc|eve", "eve", True, now=datetime.now(timezone.utc) - timedelta(days=30))
    r = client.get("/api/v1/me", headers=_bearer(token))
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Invalid or expired token"}


def test_me_rejects_inactive_token(client, app):
    token = app.state.jwt_manager.mint(9, "", "oidc|eve", "eve", False)
    assert client.get("/api/v1/me", headers=_bearer(token)).status_code == 401


def test_token_from_login_opens_me(client, app):
    add_user(app, oidc_sub="oidc|alice", username="alice")
    token = _callback(client, start_login(client)["state"]).json()["data"]["access_token"]
    r = client.get("/api/v1/me", headers=_bearer(token))
    assert r.status_code == 200
    assert r.json()["data"]["oidc_sub"] == "oidc|alice"


# --- misc ---


def test_health(client):
    assert client.get("/health").json() == {"success": True, "data": {"status": "healthy", "oidc_configured": True}}


def test_unknown_route_uses_envelope(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_audit_trail(client, app, db):
    add_user(app, oidc_sub="oidc|alice", username="alice")
    _callback(client, "bogus")
    _callback(client, start_login(client)["state"])
    client.post("/auth/refresh")
    client.post("/auth/logout")

    rows = db.scalars(select(AuthAuditLog).order_by(AuthAuditLog.id)).all()
    events = [r.event_type for r in rows]
    assert events == ["login_fail", "login_started", "login_ok", "logout"]
    ok_event = rows[2]
    assert ok_event.oidc_sub == "oidc|alice"
    assert ok_event.outcome == "success"
    assert rows[0].outcome == "fail"


def test_create_app_does_not_touch_database(tmp_path):
    db_file = tmp_path / "supply.db"
    app = create_app(make_settings(database_url=f"sqlite:///{db_file}"), oidc_provider=FakeProvider())
    assert not db_file.exists()
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
    assert db_file.exists()
    app.state.engine.dispose()


def test_startup_seeds_active_account(provider):
    settings = make_settings(seed_active_oidc_sub="oidc|alice", seed_active_username="alice")
    app = create_app(settings, oidc_provider=provider)
    with TestClient(app) as client:
        r = _callback(client, start_login(client)["state"])
    assert r.status_code == 200
    assert r.json()["data"]["user"]["username"] == "alice"

"""
Pytest configuration for supply_api. In-memory SQLite per app so tests don't touch
the filesystem, and a fake identity provider so no network is needed.
The client fixture enters the app lifespan, which creates the tables.
"""
from datetime import timedelta
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from fastapi.testclient import TestClient

from supply_api.config import JWTSettings, Settings
from supply_api.main import create_app
from supply_api.models import User
from supply_api.oidc import MissingSubjectError, TokenResponse, VerifiedIDToken

JWT_SECRET = "test-jwt-secret-0123456789abcdefghijklmnopqrstuvwxyz"


class FakeProvider:
    """Stands in for OIDCProvider; records exchanges and returns canned claims."""

    def __init__(self, claims=None, *, end_session="", post_logout_redirect=""):
        self.claims = {"sub": "oidc|alice", "email": "alice@example.org", "name": "alice"} if claims is None else claims
        self.end_session = end_session
        self.post_logout_redirect = post_logout_redirect
        self.exchange_error = None
        self.verify_error = None
        self.exchanges = []

    def auth_url(self, state, code_challenge):
        params = {"response_type": "code", "state": state, "code_challenge": code_challenge, "code_challenge_method": "S256"}
        return f"https://idp.example/authorize?{urlencode(params)}"

    async def exchange_code(self, code, code_verifier):
        self.exchanges.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenResponse(access_token="provider-access-token", id_token="provider-id-token")

    def verify_id_token(self, token):
        if self.verify_error is not None:
            raise self.verify_error
        return VerifiedIDToken(claims=dict(self.claims), raw=token.id_token)

    def extract_claims(self, verified):
        if not verified.claims.get("sub"):
            raise MissingSubjectError("id_token has no sub claim")
        return dict(verified.claims)

    def end_session_url(self, return_to, id_token_hint=""):
        if not self.end_session:
            return None, False
        return f"{self.end_session}?{urlencode({'post_logout_redirect_uri': return_to})}", True


def make_settings(**overrides) -> Settings:
    values = {
        "jwt": JWTSettings(secret=JWT_SECRET, duration=timedelta(hours=168)),
        "database_url": "sqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(**values)


def start_login(client) -> dict:
    """GET /auth/login and return the query params of the provider redirect."""
    r = client.get("/auth/login", follow_redirects=False)
    assert r.status_code == 307
    query = parse_qs(urlparse(r.headers["location"]).query)
    return {k: v[0] for k, v in query.items()}


def add_user(app, *, oidc_sub, username, email=None, is_active=True, trust_points=0) -> int:
    db = app.state.session_factory()
    try:
        user = User(oidc_sub=oidc_sub, username=username, email=email, is_active=is_active, trust_points=trust_points)
        db.add(user)
        db.commit()
        return user.id
    finally:
        db.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def app(settings, provider):
    return create_app(settings, oidc_provider=provider)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app, client):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()

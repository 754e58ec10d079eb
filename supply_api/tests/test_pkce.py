"""Tests for PKCE, state generation and authorization URL building."""
import hashlib
import re
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlparse

from supply_api.pkce import build_authorize_url, generate_pkce, generate_state, pkce_challenge


def test_generate_state_length():
    s = generate_state()
    assert len(s) >= 43
    assert re.match(r"^[A-Za-z0-9_-]+$", s)


def test_generate_state_is_unique():
    assert len({generate_state() for _ in range(50)}) == 50


def test_generate_pkce_returns_verifier_and_challenge():
    verifier, challenge = generate_pkce()
    assert 43 <= len(verifier) <= 128
    assert re.match(r"^[A-Za-z0-9_-]+$", verifier)
    assert re.match(r"^[A-Za-z0-9_-]+$", challenge)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding


def test_challenge_is_s256_of_verifier():
    verifier, challenge = generate_pkce()
    expected = urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).rstrip(b"=").decode("ascii")
    assert challenge == expected
    assert pkce_challenge(verifier) == expected


def test_pkce_challenge_known_vector():
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_build_authorize_url_includes_required_params():
    url = build_authorize_url(
        authorization_endpoint="https://idp.example/authorize",
        client_id="supply",
        redirect_uri="https://api.example/auth/callback",
        scopes=("openid", "profile", "email"),
        state="mystate",
        code_challenge="challenge123",
    )
    assert url.startswith("https://idp.example/authorize?")
    query = parse_qs(urlparse(url).query)
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["supply"]
    assert query["redirect_uri"] == ["https://api.example/auth/callback"]
    assert query["scope"] == ["openid profile email"]
    assert query["state"] == ["mystate"]
    assert query["code_challenge"] == ["challenge123"]
    assert query["code_challenge_method"] == ["S256"]


def test_build_authorize_url_keeps_existing_query():
    url = build_authorize_url(
        authorization_endpoint="https://idp.example/oauth?tenant=x",
        client_id="c",
        redirect_uri="https://c/cb",
        scopes=["openid"],
        state="s",
        code_challenge="ch",
    )
    assert url.startswith("https://idp.example/oauth?tenant=x&")
    assert parse_qs(urlparse(url).query)["tenant"] == ["x"]

"""
Relying-party client for the single configured OpenID Connect provider.

Discovery happens once at startup (bounded by a 10s timeout). After that the
client only holds immutable provider metadata and a JWKS client, so one instance
is shared by all requests.

Flow helpers:
- auth_url(): authorization endpoint URL with PKCE (S256)
- exchange_code(): authorization code + code_verifier -> token response
- verify_id_token(): signature via provider JWKS, iss / aud / exp with clock skew
- extract_claims(): claim set; a missing sub is a hard failure
- end_session_url(): RP-initiated logout URL, when the provider has one
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
import jwt
from jwt import PyJWKClient

from supply_api.config import OIDCSettings
from supply_api.pkce import build_authorize_url

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"
_REQUIRED_METADATA = ("authorization_endpoint", "token_endpoint", "jwks_uri")
# Symmetric algorithms would let anyone holding the client secret forge id tokens
_ALLOWED_ID_TOKEN_ALGS = {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"}


class OIDCError(Exception):
    """Base class for provider errors."""


class OIDCConfigError(OIDCError):
    """Missing settings or failed discovery; auth endpoints answer 503."""


class OIDCProviderUnavailable(OIDCError):
    """Provider could not be reached (network error or timeout)."""


class OIDCExchangeError(OIDCError):
    """Provider rejected the authorization code exchange."""


class OIDCVerificationError(OIDCError):
    """ID token missing or failed signature / claim verification."""


class MissingSubjectError(OIDCVerificationError):
    """Verified ID token has no sub claim."""


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    expires_in: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TokenResponse":
        expires_in = data.get("expires_in")
        return cls(
            access_token=str(data.get("access_token") or ""),
            token_type=str(data.get("token_type") or "Bearer"),
            id_token=data.get("id_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
            raw=data,
        )


@dataclass
class VerifiedIDToken:
    claims: dict[str, Any]
    raw: str = field(repr=False)


class IdentityProvider(Protocol):
    """What the login flow needs from the provider client."""

    @property
    def post_logout_redirect(self) -> str: ...

    def auth_url(self, state: str, code_challenge: str) -> str: ...

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse: ...

    def verify_id_token(self, token: TokenResponse) -> VerifiedIDToken: ...

    def extract_claims(self, verified: VerifiedIDToken) -> dict[str, Any]: ...

    def end_session_url(self, return_to: str, id_token_hint: str = "") -> tuple[str | None, bool]: ...


def fetch_provider_metadata(
    issuer: str,
    *,
    timeout: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """GET the discovery document. Raises OIDCConfigError on any failure."""
    url = f"{issuer.rstrip('/')}{DISCOVERY_PATH}"
    try:
        with httpx.Client(transport=transport, timeout=timeout) as client:
            r = client.get(url, headers={"Accept": "application/json"})
            r.raise_for_status()
            metadata = r.json()
    except httpx.HTTPError as e:
        raise OIDCConfigError(f"failed to fetch OIDC discovery document from {url}: {e}") from e
    except ValueError as e:
        raise OIDCConfigError(f"OIDC discovery document at {url} is not JSON") from e

    if not isinstance(metadata, dict):
        raise OIDCConfigError(f"OIDC discovery document at {url} is not an object")
    missing = [k for k in _REQUIRED_METADATA if not metadata.get(k)]
    if missing:
        raise OIDCConfigError(f"OIDC discovery document missing {', '.join(missing)}")
    if str(metadata.get("issuer", "")).rstrip("/") != issuer.rstrip("/"):
        raise OIDCConfigError(
            f"OIDC issuer mismatch: configured {issuer}, provider reports {metadata.get('issuer')}"
        )
    return metadata


class OIDCProvider:
    def __init__(
        self,
        settings: OIDCSettings,
        metadata: dict[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        jwks_client: PyJWKClient | None = None,
    ) -> None:
        self._settings = settings
        self._metadata = metadata
        self._transport = transport
        self._jwks_client = jwks_client or PyJWKClient(
            metadata["jwks_uri"],
            cache_jwk_set=True,
            lifespan=300,
            timeout=int(settings.discovery_timeout),
        )
        advertised = metadata.get("id_token_signing_alg_values_supported") or ["RS256"]
        self._id_token_algs = [a for a in advertised if a in _ALLOWED_ID_TOKEN_ALGS] or ["RS256"]

    @classmethod
    def discover(
        cls,
        settings: OIDCSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OIDCProvider":
        """Validate required settings and run discovery. Raises OIDCConfigError."""
        missing = settings.missing_fields()
        if missing:
            raise OIDCConfigError(f"OIDC is not configured: set {', '.join(missing)}")
        metadata = fetch_provider_metadata(
            settings.issuer, timeout=settings.discovery_timeout, transport=transport
        )
        logger.info("OIDC provider discovered: issuer=%s", settings.issuer)
        return cls(settings, metadata, transport=async_transport)

    @property
    def issuer(self) -> str:
        return self._settings.issuer

    @property
    def post_logout_redirect(self) -> str:
        return self._settings.post_logout_redirect_url

    def auth_url(self, state: str, code_challenge: str) -> str:
        return build_authorize_url(
            authorization_endpoint=self._metadata["authorization_endpoint"],
            client_id=self._settings.client_id,
            redirect_uri=self._settings.redirect_url,
            scopes=self._settings.scopes,
            state=state,
            code_challenge=code_challenge,
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        """
        Exchange an authorization code at the token endpoint (with code_verifier).
        Not retried: a failure is returned to the caller, who can restart login.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.redirect_url,
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "code_verifier": code_verifier,
        }
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._settings.discovery_timeout
            ) as client:
                r = await client.post(
                    self._metadata["token_endpoint"],
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise OIDCProviderUnavailable(f"token endpoint unreachable: {e}") from e

        if r.status_code != 200:
            err = {}
            if r.headers.get("content-type", "").startswith("application/json"):
                try:
                    err = r.json()
                except ValueError:
                    err = {}
            if not isinstance(err, dict):
                err = {}
            desc = err.get("error_description") or err.get("error") or f"HTTP {r.status_code}"
            raise OIDCExchangeError(f"code exchange rejected: {desc}")
        try:
            body = r.json()
        except ValueError as e:
            raise OIDCExchangeError("token endpoint returned non-JSON body") from e
        if not isinstance(body, dict):
            raise OIDCExchangeError("token endpoint returned unexpected body")
        try:
            return TokenResponse.from_json(body)
        except (TypeError, ValueError) as e:
            raise OIDCExchangeError(f"token endpoint returned malformed fields: {e}") from e

    def verify_id_token(self, token: TokenResponse) -> VerifiedIDToken:
        """Verify the id_token from a token response. Blocking (JWKS fetch)."""
        raw = token.id_token
        if not raw:
            raise OIDCVerificationError("no id_token in token response")
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(raw)
            claims = jwt.decode(
                raw,
                signing_key.key,
                algorithms=self._id_token_algs,
                audience=self._settings.client_id,
                issuer=self._settings.issuer,
                leeway=self._settings.clock_skew_seconds,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.PyJWTError as e:
            raise OIDCVerificationError(f"id_token verification failed: {e}") from e
        return VerifiedIDToken(claims=claims, raw=raw)

    def extract_claims(self, verified: VerifiedIDToken) -> dict[str, Any]:
        claims = dict(verified.claims)
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            raise MissingSubjectError("id_token has no sub claim")
        return claims

    def end_session_url(self, return_to: str, id_token_hint: str = "") -> tuple[str | None, bool]:
        """Provider logout URL, or (None, False) when no end-session endpoint is known."""
        endpoint = self._settings.end_session_url or self._metadata.get("end_session_endpoint") or ""
        if not endpoint:
            return None, False
        params = {}
        if return_to:
            params["post_logout_redirect_uri"] = return_to
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        params["client_id"] = self._settings.client_id
        sep = "&" if "?" in endpoint else "?"
        return f"{endpoint}{sep}{urlencode(params)}", True

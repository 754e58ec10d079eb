"""
Access tokens issued by this service after a successful OIDC login.

Stateless HMAC-signed JWTs: validity depends only on the signature and claims,
nothing is stored server-side. Claim names are a wire contract:
user_id, email, oidc_sub, username, is_active, iat, nbf, exp, plus a random jti
so that two tokens minted in the same second never share a value.

is_active is a snapshot taken at mint time. Deactivating an account does not
invalidate tokens already issued to it; they stay valid until exp.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
_REQUIRED_CLAIMS = ["exp", "iat", "nbf", "user_id", "oidc_sub", "username", "is_active"]


class TokenError(Exception):
    """Base class for access token errors."""


class TokenExpiredError(TokenError):
    """Signature is valid but exp has passed. The only refreshable failure."""


class InvalidTokenError(TokenError):
    """Bad signature, wrong algorithm, malformed, or not yet valid."""


class InactiveAccountError(TokenError):
    """Token was minted for an account that was not active."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    email: str
    oidc_sub: str
    username: str
    is_active: bool
    issued_at: datetime
    not_before: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        user_id = payload.get("user_id")
        is_active = payload.get("is_active")
        if not isinstance(user_id, int) or isinstance(user_id, bool) or not isinstance(is_active, bool):
            raise InvalidTokenError("malformed token claims")
        return cls(
            user_id=user_id,
            email=str(payload.get("email") or ""),
            oidc_sub=str(payload["oidc_sub"]),
            username=str(payload["username"]),
            is_active=is_active,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            not_before=datetime.fromtimestamp(payload["nbf"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def profile(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "username": self.username,
            "oidc_sub": self.oidc_sub,
            "is_active": self.is_active,
        }


class JWTManager:
    def __init__(self, secret: str, duration: timedelta, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("JWT signing secret must not be empty")
        if algorithm not in HMAC_ALGORITHMS:
            raise ValueError(f"JWT algorithm must be one of {HMAC_ALGORITHMS}, got {algorithm!r}")
        if duration <= timedelta(0):
            raise ValueError("JWT duration must be positive")
        self._secret = secret
        self.duration = duration
        self.algorithm = algorithm

    def __repr__(self) -> str:
        return f"JWTManager(algorithm={self.algorithm!r}, duration={self.duration!r})"

    @property
    def expires_in(self) -> int:
        """Token lifetime in seconds, as reported to clients."""
        return int(self.duration.total_seconds())

    def mint(
        self,
        user_id: int,
        email: str,
        oidc_sub: str,
        username: str,
        is_active: bool,
        *,
        now: datetime | None = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        iat = int(now.timestamp())
        payload = {
            "user_id": user_id,
            "email": email or "",
            "oidc_sub": oidc_sub,
            "username": username,
            "is_active": bool(is_active),
            "iat": iat,
            "nbf": iat,
            "exp": int((now + self.duration).timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        token = jwt.encode(payload, self._secret, algorithm=self.algorithm, headers={"typ": "JWT"})
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def _decode(self, token: str, *, verify_exp: bool) -> dict[str, Any]:
        # algorithms pinned to the configured one: tokens signed with anything else are rejected
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self.algorithm],
            options={"require": _REQUIRED_CLAIMS, "verify_exp": verify_exp},
        )

    def validate(self, token: str) -> AccessClaims:
        """
        Verify signature, algorithm and temporal claims; reject inactive accounts.
        Raises TokenExpiredError, InvalidTokenError or InactiveAccountError.
        """
        try:
            payload = self._decode(token, verify_exp=True)
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("token has expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"invalid token: {e}") from e
        claims = AccessClaims.from_payload(payload)
        if not claims.is_active:
            raise InactiveAccountError("user account is not active")
        return claims

    def refresh(self, token: str) -> str:
        """
        Mint a new token with the same identity claims and a new expiry window.
        Only expiry is forgiven; every other validation failure is re-raised.
        """
        try:
            claims = self.validate(token)
        except TokenExpiredError:
            try:
                payload = self._decode(token, verify_exp=False)
            except jwt.InvalidTokenError as e:
                raise InvalidTokenError(f"invalid token: {e}") from e
            claims = AccessClaims.from_payload(payload)
            if not claims.is_active:
                raise InactiveAccountError("user account is not active")
        return self.mint(claims.user_id, claims.email, claims.oidc_sub, claims.username, claims.is_active)

"""
FastAPI dependencies shared by the auth routes, and the bearer-token gate for
protected API routes. Components live on app.state (set up in create_app).
"""
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from supply_api.config import Settings
from supply_api.flow_store import FlowStore
from supply_api.oidc import IdentityProvider
from supply_api.rate_limit import RateLimiter
from supply_api.tokens import AccessClaims, JWTManager, TokenError

logger = logging.getLogger(__name__)

OIDC_NOT_CONFIGURED = (
    "OIDC authentication is not configured. Please configure OIDC_ISSUER, OIDC_CLIENT_ID, "
    "OIDC_CLIENT_SECRET, and OIDC_REDIRECT_URL environment variables."
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_jwt_manager(request: Request) -> JWTManager:
    return request.app.state.jwt_manager


def get_flow_store(request: Request) -> FlowStore:
    return request.app.state.flow_store


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_optional_oidc(request: Request) -> IdentityProvider | None:
    return getattr(request.app.state, "oidc", None)


def get_oidc(request: Request) -> IdentityProvider:
    """Dependency: the provider client, or 503 when OIDC is not configured."""
    provider = get_optional_oidc(request)
    if provider is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=OIDC_NOT_CONFIGURED)
    return provider


bearer_scheme = HTTPBearer(auto_error=False)


def get_bearer_token(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> str:
    """Extract the token from 'Authorization: Bearer <token>'. Raises 401 if missing or malformed."""
    if credentials is not None:
        return credentials.credentials
    if not request.headers.get("Authorization"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # HTTPBearer returns None for a non-Bearer scheme or an empty credential
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authorization header format. Expected: Bearer <token>",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_claims(
    token: Annotated[str, Depends(get_bearer_token)],
    jwt_manager: Annotated[JWTManager, Depends(get_jwt_manager)],
) -> AccessClaims:
    """Dependency: valid Bearer token -> access claims."""
    try:
        return jwt_manager.validate(token)
    except TokenError as e:
        logger.debug("Access token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


RequireUser = Depends(get_claims)

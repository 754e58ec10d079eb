"""
POST /auth/refresh. Exchanges a still-valid or merely expired access token for a
new one with a fresh expiry window. Tampered, wrongly-signed or inactive-account
tokens are never refreshed.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from supply_api.audit import (
    EVENT_TOKEN_REFRESH_FAIL,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from supply_api.auth import get_bearer_token, get_jwt_manager, get_rate_limiter, get_settings
from supply_api.config import Settings
from supply_api.database import get_db
from supply_api.rate_limit import RateLimiter
from supply_api.responses import ok
from supply_api.tokens import JWTManager, TokenError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")


@router.post("/refresh")
def refresh(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    jwt_manager: Annotated[JWTManager, Depends(get_jwt_manager)],
    token: Annotated[str, Depends(get_bearer_token)],
    db: Session = Depends(get_db),
):
    limiter.enforce(request, "refresh", settings.rate_limit_refresh_per_minute)
    ip = get_client_ip(request)
    try:
        new_token = jwt_manager.refresh(token)
    except TokenError as e:
        logger.info("Token refresh refused: %s", e)
        log_audit(db, EVENT_TOKEN_REFRESH_FAIL, ip=ip, outcome=OUTCOME_FAIL)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Failed to refresh token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = jwt_manager.validate(new_token)
    log_audit(db, EVENT_TOKEN_REFRESHED, user_id=claims.user_id, oidc_sub=claims.oidc_sub, ip=ip)
    return ok(
        {
            "access_token": new_token,
            "token_type": "Bearer",
            "expires_in": jwt_manager.expires_in,
        }
    )

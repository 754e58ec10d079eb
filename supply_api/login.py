"""
OIDC login: GET /auth/login starts an Authorization Code + PKCE flow,
GET /auth/callback finishes it and issues our own access token.

The pending attempt (state + code_verifier) is stored server-side under a random
flow id kept in the auth_flow cookie, so it is bound to the browser that started
the login. It is deleted as soon as the callback's state matches, before any
provider call, so a callback can never be replayed.
"""
import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from supply_api.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_LOGIN_PENDING,
    EVENT_LOGIN_REGISTERED,
    EVENT_LOGIN_STARTED,
    OUTCOME_FAIL,
    OUTCOME_PENDING,
    get_client_ip,
    log_audit,
)
from supply_api.auth import get_flow_store, get_jwt_manager, get_oidc, get_rate_limiter, get_settings
from supply_api.config import Settings
from supply_api.database import get_db
from supply_api.flow_store import AuthorizationAttempt, FlowStore
from supply_api.oidc import (
    IdentityProvider,
    MissingSubjectError,
    OIDCExchangeError,
    OIDCProviderUnavailable,
    OIDCVerificationError,
)
from supply_api.pkce import generate_pkce, generate_state
from supply_api.rate_limit import RateLimiter
from supply_api.responses import ok
from supply_api.tokens import JWTManager
from supply_api.users import Allowed, ExternalIdentity, IdentityResolver, NotAllowed, SqlUserDirectory

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

FLOW_COOKIE = "auth_flow"
FLOW_COOKIE_PATH = "/auth"

MSG_PENDING = "Your account is pending approval. Please contact an administrator."
MSG_REGISTERED = "Your account has been registered and is pending approval. Please contact an administrator."
MSG_NOT_ACTIVE = "Your account is not active. Please contact an administrator."


@router.get("/login")
def login(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    provider: Annotated[IdentityProvider, Depends(get_oidc)],
    store: Annotated[FlowStore, Depends(get_flow_store)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    db: Session = Depends(get_db),
):
    """Generate state + PKCE pair, remember them for this browser, redirect to the provider."""
    limiter.enforce(request, "login", settings.rate_limit_login_per_minute)

    previous = request.cookies.get(FLOW_COOKIE)
    if previous:
        store.delete(previous)

    state = generate_state()
    code_verifier, code_challenge = generate_pkce()
    flow_id = secrets.token_urlsafe(32)
    store.put(flow_id, AuthorizationAttempt(state=state, code_verifier=code_verifier), settings.flow_ttl_seconds)
    log_audit(db, EVENT_LOGIN_STARTED, ip=get_client_ip(request))

    response = RedirectResponse(url=provider.auth_url(state, code_challenge), status_code=307)
    response.set_cookie(
        FLOW_COOKIE,
        flow_id,
        max_age=settings.flow_ttl_seconds,
        path=FLOW_COOKIE_PATH,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return response


def _state_matches(received: str | None, attempt: AuthorizationAttempt | None) -> bool:
    if attempt is None or not received or not attempt.state:
        return False
    return secrets.compare_digest(received.encode("utf-8"), attempt.state.encode("utf-8"))


def _complete_login(db: Session, jwt_manager: JWTManager, identity: ExternalIdentity, ip: str | None) -> dict:
    """Account gating + token issuance. Runs in a worker thread (blocking DB calls)."""
    resolver = IdentityResolver(SqlUserDirectory(db))
    decision = resolver.resolve(identity.subject)

    if isinstance(decision, NotAllowed):
        account, created = resolver.provision_from_profile(identity.subject, identity.display_name, identity.email)
        event = EVENT_LOGIN_REGISTERED if created else EVENT_LOGIN_PENDING
        logger.info("Login blocked for sub=%s: account id=%s awaiting approval (new=%s)", identity.subject, account.id, created)
        log_audit(db, event, user_id=account.id, oidc_sub=identity.subject, ip=ip, outcome=OUTCOME_PENDING)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=MSG_REGISTERED if created else MSG_NOT_ACTIVE)

    if not isinstance(decision, Allowed):
        account = decision.account
        logger.info("Login blocked for sub=%s: account id=%s pending approval", identity.subject, account.id)
        log_audit(db, EVENT_LOGIN_PENDING, user_id=account.id, oidc_sub=identity.subject, ip=ip, outcome=OUTCOME_PENDING)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=MSG_PENDING)

    account = decision.account
    access_token = jwt_manager.mint(
        account.id,
        account.email or "",
        account.oidc_sub,
        account.username,
        account.is_active,
    )
    log_audit(db, EVENT_LOGIN_OK, user_id=account.id, oidc_sub=account.oidc_sub, ip=ip)
    logger.info("Login succeeded for user id=%s", account.id)
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": jwt_manager.expires_in,
        "user": account.public_profile(),
    }


@router.get("/callback")
async def callback(
    request: Request,
    provider: Annotated[IdentityProvider, Depends(get_oidc)],
    store: Annotated[FlowStore, Depends(get_flow_store)],
    jwt_manager: Annotated[JWTManager, Depends(get_jwt_manager)],
    db: Session = Depends(get_db),
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """
    Validate state against the stored attempt, exchange the code with the PKCE
    verifier, verify the ID token and gate on the local account.
    """
    ip = get_client_ip(request)

    async def reject(status_code: int, message: str) -> HTTPException:
        await run_in_threadpool(log_audit, db, EVENT_LOGIN_FAIL, ip=ip, outcome=OUTCOME_FAIL)
        return HTTPException(status_code=status_code, detail=message)

    flow_id = request.cookies.get(FLOW_COOKIE)
    attempt = store.get(flow_id) if flow_id else None
    if not _state_matches(state, attempt):
        logger.warning("Callback rejected: state mismatch or no pending login")
        raise await reject(status.HTTP_400_BAD_REQUEST, "Invalid state parameter")

    # One-time use from here on, whatever the outcome
    store.delete(flow_id)

    if not attempt.code_verifier:
        raise await reject(status.HTTP_400_BAD_REQUEST, "Missing PKCE verifier")
    if error:
        logger.info("Provider returned error on callback: %s", error)
        raise await reject(status.HTTP_400_BAD_REQUEST, f"Authorization failed: {error_description or error}")
    if not code:
        raise await reject(status.HTTP_400_BAD_REQUEST, "Missing authorization code")

    try:
        token = await provider.exchange_code(code, attempt.code_verifier)
    except OIDCProviderUnavailable as e:
        logger.error("Code exchange failed, provider unreachable: %s", e)
        raise await reject(status.HTTP_502_BAD_GATEWAY, "Identity provider unavailable")
    except OIDCExchangeError as e:
        logger.warning("Code exchange rejected: %s", e)
        raise await reject(status.HTTP_401_UNAUTHORIZED, "Failed to exchange authorization code")

    try:
        verified = await run_in_threadpool(provider.verify_id_token, token)
        claims = provider.extract_claims(verified)
    except MissingSubjectError:
        logger.warning("ID token has no sub claim")
        raise await reject(status.HTTP_401_UNAUTHORIZED, "Invalid OIDC token: missing sub claim")
    except OIDCVerificationError as e:
        logger.warning("ID token verification failed: %s", e)
        raise await reject(status.HTTP_401_UNAUTHORIZED, "Failed to verify ID token")

    identity = ExternalIdentity.from_claims(claims)
    body = await run_in_threadpool(_complete_login, db, jwt_manager, identity, ip)

    response = JSONResponse(content=ok(body))
    response.delete_cookie(FLOW_COOKIE, path=FLOW_COOKIE_PATH)
    return response

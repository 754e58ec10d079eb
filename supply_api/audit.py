"""
Audit trail for login, refresh and logout. Security-relevant events only;
no tokens, authorization codes or secrets are recorded.
"""
from fastapi import Request
from sqlalchemy.orm import Session

from supply_api.models import AuthAuditLog

EVENT_LOGIN_STARTED = "login_started"
EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_PENDING = "login_pending"
EVENT_LOGIN_REGISTERED = "login_registered"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REFRESH_FAIL = "token_refresh_fail"
EVENT_LOGOUT = "logout"

OUTCOME_SUCCESS = "success"
OUTCOME_PENDING = "pending"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    user_id: int | None = None,
    oidc_sub: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record."""
    db.add(
        AuthAuditLog(
            event_type=event_type,
            user_id=user_id,
            oidc_sub=oidc_sub,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()

"""
POST /auth/logout. Access tokens are stateless, so there is nothing to revoke
server-side: the client discards its token. When the provider exposes an
end-session endpoint we hand back its URL so the client can end the provider
session too. Always succeeds.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from supply_api.audit import EVENT_LOGOUT, get_client_ip, log_audit
from supply_api.auth import get_flow_store, get_optional_oidc
from supply_api.database import get_db
from supply_api.flow_store import FlowStore
from supply_api.login import FLOW_COOKIE, FLOW_COOKIE_PATH
from supply_api.oidc import IdentityProvider
from supply_api.responses import ok

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

LOGGED_OUT = "Logged out successfully"


def _default_return_to(request: Request) -> str:
    """Scheme + host of this service, used when no post-logout redirect is configured."""
    return f"{request.url.scheme}://{request.url.netloc}"


@router.post("/logout")
def logout(
    request: Request,
    provider: Annotated[IdentityProvider | None, Depends(get_optional_oidc)],
    store: Annotated[FlowStore, Depends(get_flow_store)],
    db: Session = Depends(get_db),
):
    """Drop any pending login for this browser and return the provider logout URL if there is one."""
    flow_id = request.cookies.get(FLOW_COOKIE)
    if flow_id:
        store.delete(flow_id)

    data = {"message": LOGGED_OUT}
    if provider is not None:
        return_to = provider.post_logout_redirect or _default_return_to(request)
        logout_url, available = provider.end_session_url(return_to, "")
        if available:
            data["logout_url"] = logout_url

    log_audit(db, EVENT_LOGOUT, ip=get_client_ip(request))
    response = JSONResponse(content=ok(data))
    response.delete_cookie(FLOW_COOKIE, path=FLOW_COOKIE_PATH)
    return response

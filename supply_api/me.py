"""
Profile of the authenticated caller, taken from the access token claims.
GET /api/v1/me and the older alias GET /user.
"""
from fastapi import APIRouter

from supply_api.auth import RequireUser
from supply_api.responses import ok
from supply_api.tokens import AccessClaims

router = APIRouter()


@router.get("/api/v1/me")
@router.get("/user")
def me(claims: AccessClaims = RequireUser):
    return ok(claims.profile())

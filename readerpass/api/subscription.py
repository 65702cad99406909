"""
Subscription API routes.

- GET  /api/subscription/check-anonymous: Day pass state for the session cookie
- GET  /api/subscription/me: Entitlement for the signed-in caller
- POST /api/subscription/merge: Move an anonymous day pass onto the account
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from readerpass.core.auth import CurrentUser, get_current_user
from readerpass.features.entitlements.service import (
    check_anonymous_entitlement,
    get_user_entitlement,
    merge_anonymous_day_pass,
)
from readerpass.features.sessions import service as sessions
from readerpass.models.subscription import Entitlement, MergeResult


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class EntitlementResponse(BaseModel):
    has_access: bool
    tier: str
    status: str
    end_date: Optional[str]  # ISO8601
    provider: Optional[str] = None


class MergeResponse(BaseModel):
    result: str
    entitlement: EntitlementResponse


def _to_response(entitlement: Entitlement) -> EntitlementResponse:
    return EntitlementResponse(
        has_access=entitlement.active,
        tier=entitlement.tier.value,
        status=entitlement.status.value,
        end_date=entitlement.end_date.isoformat() if entitlement.end_date else None,
        provider=entitlement.provider,
    )


@router.get("/check-anonymous", response_model=EntitlementResponse)
def check_anonymous(request: Request):
    """No cookie, a malformed cookie and an expired pass all read as no access."""
    session_id = sessions.read_session_id(request)
    return _to_response(check_anonymous_entitlement(session_id))


@router.get("/me", response_model=EntitlementResponse)
def me(user: CurrentUser = Depends(get_current_user)):
    return _to_response(get_user_entitlement(user.user_id))


@router.post("/merge", response_model=MergeResponse)
def merge(request: Request, user: CurrentUser = Depends(get_current_user)):
    """
    Merge the browser's day pass into the caller's account.

    Call after every login or signup; repeating it is harmless.
    """
    session_id = sessions.read_session_id(request)
    if session_id:
        result = merge_anonymous_day_pass(session_id, user.user_id)
    else:
        result = MergeResult.NO_PASS
    return MergeResponse(result=result.value, entitlement=_to_response(get_user_entitlement(user.user_id)))

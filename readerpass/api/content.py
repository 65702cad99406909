"""
Content gating API.

- GET /api/content/{item_id}/units: Units of an item with their lock state

Content itself lives in an external store (app.state.content_source).
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from readerpass.core.auth import CurrentUser, get_optional_user
from readerpass.core.config import settings
from readerpass.core.errors import NotFoundError
from readerpass.features.access.evaluator import gate_content_units
from readerpass.features.entitlements.service import resolve_entitlement
from readerpass.features.sessions import service as sessions


router = APIRouter(prefix="/api/content", tags=["content"])


class UnitOut(BaseModel):
    index: int
    id: Optional[str]
    unlocked: bool
    data: Optional[Dict[str, Any]] = None


class UnitsResponse(BaseModel):
    item_id: str
    has_access: bool
    preview_limit: int
    units: List[UnitOut]


@router.get("/{item_id}/units", response_model=UnitsResponse)
def get_units(item_id: str, request: Request, user: Optional[CurrentUser] = Depends(get_optional_user)):
    entitlement = resolve_entitlement(user.user_id if user else None, sessions.read_session_id(request))
    gated = gate_content_units(request.app.state.content_source, item_id, entitlement)
    if gated is None:
        raise NotFoundError("Item not found")
    return UnitsResponse(
        item_id=item_id,
        has_access=entitlement.active,
        preview_limit=settings.FREE_PREVIEW_LIMIT,
        units=[UnitOut(index=u.index, id=u.unit_id, unlocked=u.unlocked, data=u.data) for u in gated],
    )

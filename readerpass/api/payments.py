"""
Payment API routes.

- POST /api/payments/initialize: Start a purchase for an authenticated user
- POST /api/payments/initialize-anonymous: Start a day pass purchase without an account
- GET  /api/payments/callback/{provider}: Gateway redirect back (always answers with a redirect)
- POST /api/payments/webhook/{provider}: Gateway server-to-server notification
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from readerpass.api.geo import caller_region
from readerpass.core.auth import CurrentUser, get_current_user, get_optional_user
from readerpass.features.billing.reconciliation import handle_callback, process_webhook
from readerpass.features.billing.service import InitiationResult, initiate_payment
from readerpass.features.plans.catalog import format_price
from readerpass.features.sessions import service as sessions
from readerpass.models.plan import Region

logger = logging.getLogger("readerpass")

router = APIRouter(prefix="/api/payments", tags=["payments"])


class InitializeRequest(BaseModel):
    plan_name: str


class InitializeResponse(BaseModel):
    reference: str
    authorization_url: str
    provider: str
    plan_name: str
    amount: int
    currency: str
    display_price: str


def _to_response(result: InitiationResult) -> InitializeResponse:
    return InitializeResponse(
        reference=result.reference,
        authorization_url=result.redirect_url,
        provider=result.provider.value,
        plan_name=result.plan.name,
        amount=result.plan.amount,
        currency=result.plan.currency,
        display_price=format_price(result.plan.amount, result.plan.currency),
    )


@router.post("/initialize", response_model=InitializeResponse)
def initialize(body: InitializeRequest, request: Request, user: CurrentUser = Depends(get_current_user)):
    """
    Create a payment intent for the signed-in caller.

    Errors:
        400: Unknown plan
        401: Not authenticated
        402/502/503: Gateway declined, unreachable, or not configured
    """
    result = initiate_payment(body.plan_name, caller_region(request), user=user)
    return _to_response(result)


@router.post("/initialize-anonymous", response_model=InitializeResponse)
def initialize_anonymous(body: InitializeRequest, request: Request, response: Response):
    """
    Create a day pass intent without an account.

    Reuses the caller's session cookie when present, otherwise issues one.
    The cookie is the only proof of purchase until the buyer logs in.
    """
    session_id = sessions.read_session_id(request) or sessions.issue_session_id()
    result = initiate_payment(body.plan_name, caller_region(request), session_id=session_id)
    sessions.attach(session_id, response)
    return _to_response(result)


async def _callback_caller(request: Request) -> Optional[CurrentUser]:
    # A stale token on a redirect should land on login_required, not a JSON 401
    try:
        return await get_optional_user(
            request,
            x_user_id=request.headers.get("x-user-id"),
            x_user_email=request.headers.get("x-user-email"),
        )
    except HTTPException:
        return None


@router.get("/callback/{provider}")
def payment_callback(provider: Region, request: Request, caller: Optional[CurrentUser] = Depends(_callback_caller)):
    """
    Reconcile a gateway redirect and send the browser on.

    Success: SUCCESS_PATH?success=true&plan=...
    Failure: FAILURE_PATH?error=<reason>
    """
    outcome = handle_callback(provider.value, dict(request.query_params), caller)
    response = RedirectResponse(outcome.redirect_url(), status_code=303)
    if outcome.success and outcome.anonymous and outcome.session_id:
        sessions.attach(outcome.session_id, response)
    return response


@router.post("/webhook/{provider}")
async def payment_webhook(provider: Region, request: Request):
    """
    Handle gateway webhook events.

    Verifies the signature, processes the event idempotently and updates
    entitlement state.

    Returns:
        {"received": true, "event_id": "..."}

    Errors:
        400: Invalid signature or payload
        503: Gateway not configured
        500: Processing failed (gateway will retry)
    """
    # Raw body is required for signature verification
    body = await request.body()
    event = await run_in_threadpool(process_webhook, provider.value, request.headers, body)
    return {"received": True, "event_id": event.event_id}

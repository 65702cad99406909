"""
Payment initiation.

Coordinates:
- Plan pricing for the caller's region
- Gateway selection and customer management
- Creating the one-time or recurring intent at the gateway
- Persisting the PaymentIntent so the callback can find it again

All gateway-specific code lives in the provider modules.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
from urllib.parse import urlencode
from uuid import uuid4

from readerpass.core.auth import CurrentUser
from readerpass.core.config import settings
from readerpass.core.errors import ValidationError
from readerpass.core.logging import log_event
from readerpass.features.billing.provider import GatewayProvider
from readerpass.features.billing.registry import get_gateway
from readerpass.features.entitlements import store
from readerpass.features.plans.catalog import format_price, get_plan
from readerpass.models.payment import IntentKind, IntentStatus, PaymentIntent
from readerpass.models.plan import PlanPrice, Region, Tier
from readerpass.models.region import RegionResult

logger = logging.getLogger("readerpass")


@dataclass
class InitiationResult:
    reference: str
    redirect_url: str
    provider: Region
    plan: PlanPrice
    session_id: Optional[str] = None


def new_reference(tier: Tier) -> str:
    # Paystack accepts only alphanumerics, '-', '.', '='
    return f"rp-{tier.value}-{uuid4().hex}"


def callback_url(region: Region, reference: str) -> str:
    base = settings.APP_BASE_URL.rstrip("/")
    return f"{base}/api/payments/callback/{region.value}?{urlencode({'intent': reference})}"


def cancel_url() -> str:
    base = settings.APP_BASE_URL.rstrip("/")
    return f"{base}{settings.FAILURE_PATH}?{urlencode({'error': 'payment_cancelled'})}"


def anonymous_email(session_id: str) -> str:
    # Gateways insist on an email; the session prefix keeps it unique without exposing the token
    return f"anonymous_{session_id[:16]}@{settings.ANONYMOUS_EMAIL_DOMAIN}"


def payer_email(user: Optional[CurrentUser], session_id: Optional[str]) -> str:
    if user is not None:
        return user.email or f"user_{user.user_id}@{settings.ANONYMOUS_EMAIL_DOMAIN}"
    return anonymous_email(session_id or uuid4().hex)


def gateway_plan_name(plan: PlanPrice) -> str:
    return f"{plan.name} {plan.cadence.value.replace('_', ' ').title()} - {format_price(plan.amount, plan.currency)}"


def ensure_customer(gateway: GatewayProvider, region: Region, user: CurrentUser, email: str) -> str:
    """
    Reuse the stored gateway customer for this user, creating it on first purchase.

    Only the domestic gateway keeps a customer object worth storing.
    """
    if region == Region.DOMESTIC:
        existing = store.get_customer_ref(user.user_id)
        if existing:
            return existing
    customer_ref = gateway.create_customer(email)
    if region == Region.DOMESTIC:
        store.save_customer_ref(user.user_id, customer_ref)
    return customer_ref


def initiate_payment(
    plan_name: str,
    region: RegionResult,
    *,
    user: Optional[CurrentUser] = None,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InitiationResult:
    """
    Create a payment intent and return where to send the caller.

    Args:
        plan_name: Catalog plan name
        region: Caller's resolved region (selects gateway and price)
        user: Authenticated caller, or None for an anonymous day pass purchase
        session_id: Anonymous session token (required when user is None)

    Raises:
        ValidationError: Unknown plan, or a recurring plan without an account
        ConfigurationError / ProviderRejected / ProviderUnreachable: gateway failures
    """
    plan = get_plan(plan_name, region.is_domestic)
    if plan is None:
        raise ValidationError("Invalid plan")

    if user is None:
        if plan.tier != Tier.DAYPASS:
            raise ValidationError("Only the Day Pass can be purchased without an account")
        if not session_id:
            raise ValidationError("Anonymous purchase requires a session")

    gateway = get_gateway(plan.region)
    reference = new_reference(plan.tier)
    email = payer_email(user, session_id)
    kind = IntentKind.RECURRING if plan.is_recurring else IntentKind.ONE_TIME

    metadata: Dict[str, str] = {
        "reference": reference,
        "plan_name": plan.name,
        "plan_type": plan.tier.value,
        "kind": kind.value,
        "email": email,
        "amount": str(plan.amount),
    }
    if user is not None:
        metadata["user_id"] = user.user_id
    else:
        metadata["is_anonymous"] = "true"

    return_to = callback_url(plan.region, reference)
    cancel_to = cancel_url()

    if user is not None:
        metadata["customer_code"] = ensure_customer(gateway, plan.region, user, email)

    if kind == IntentKind.ONE_TIME:
        # Both gateways start one-time payments from the payer's email
        intent = gateway.create_one_time_intent(email, plan.amount, plan.currency, return_to, cancel_to, metadata)
    else:
        plan_ref = gateway.create_recurring_plan(gateway_plan_name(plan), plan.amount, plan.currency, plan.cadence.value)
        intent = gateway.create_subscription_intent(plan_ref, return_to, cancel_to, metadata)

    store.create_intent(
        PaymentIntent(
            reference=reference,
            user_id=user.user_id if user is not None else None,
            session_id=session_id if user is None else None,
            plan_name=plan.name,
            provider=plan.region,
            provider_reference=intent.reference,
            amount=plan.amount,
            currency=plan.currency,
            kind=kind,
            status=IntentStatus.PENDING,
            created_at=store.normalize_now(now),
        )
    )

    log_event(
        "info",
        "payments.initiated",
        user_id=user.user_id if user is not None else None,
        session_id=session_id if user is None else None,
        provider=plan.region.value,
        reference=reference,
        event_type="payments.initiate",
        extra={"plan_name": plan.name, "amount": plan.amount, "currency": plan.currency},
    )

    return InitiationResult(
        reference=reference,
        redirect_url=intent.redirect_url,
        provider=plan.region,
        plan=plan,
        session_id=session_id if user is None else None,
    )

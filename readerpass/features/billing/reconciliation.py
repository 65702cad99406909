"""
Reconciliation handler.

Turns gateway confirmations into entitlement state. Two independent paths
reach it for the same payment, in any order, possibly both or only one:

1. The browser redirect back from the gateway (handle_callback)
2. The gateway's server-to-server webhook (process_webhook)

Both resolve to the same local intent reference and grant through
store.grant(), whose ledger makes the second arrival a no-op.

Per-record state machine:
    free -> pending        intent created (PaymentIntent row only)
    pending -> active      verified success
    pending -> (unchanged) failure; intent marked failed, no entitlement write
    active -> cancelled    webhook cancellation / suspension
    active -> expired      webhook expiry, or derived at read time once end_date passes
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy import insert, select, update, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from readerpass.core.auth import CurrentUser
from readerpass.core.config import settings
from readerpass.core.database import billing_events, get_db_session
from readerpass.core.errors import (
    AuthenticationRequired,
    ConfigurationError,
    IdentityMismatch,
    ProviderRejected,
    ProviderUnreachable,
)
from readerpass.core.logging import log_event
from readerpass.features.billing.provider import SubscriptionState, WebhookAction, WebhookEvent
from readerpass.features.billing.registry import get_gateway
from readerpass.features.entitlements import store
from readerpass.features.entitlements.service import compute_end_date
from readerpass.features.plans.catalog import get_plan_definition
from readerpass.models.payment import IntentKind, IntentStatus, PaymentIntent
from readerpass.models.plan import Region, Tier
from readerpass.models.subscription import AnonymousSubject, GrantResult, SubscriptionStatus, UserSubject

logger = logging.getLogger("readerpass")

# Failure reason codes carried in the redirect URL
NO_REFERENCE = "no_reference"
INVALID_INTENT = "invalid_intent"
PAYMENT_FAILED = "payment_failed"
VERIFICATION_PENDING = "verification_pending"
PAYMENT_UNAVAILABLE = "payment_unavailable"


@dataclass
class CallbackOutcome:
    success: bool
    reason: Optional[str] = None
    plan_name: Optional[str] = None
    pending: bool = False
    anonymous: bool = False
    session_id: Optional[str] = None
    end_date: Optional[datetime] = None

    def redirect_url(self) -> str:
        base = settings.APP_BASE_URL.rstrip("/")
        if not self.success:
            return f"{base}{settings.FAILURE_PATH}?{urlencode({'error': self.reason})}"
        params = {"success": "true", "plan": self.plan_name}
        if self.pending:
            params["pending"] = "true"
        if self.anonymous:
            params["anonymous"] = "true"
        return f"{base}{settings.SUCCESS_PATH}?{urlencode(params)}"


def _failure(reason: str, intent: Optional[PaymentIntent] = None) -> CallbackOutcome:
    return CallbackOutcome(
        success=False,
        reason=reason,
        plan_name=intent.plan_name if intent else None,
        anonymous=bool(intent and intent.is_anonymous),
        session_id=intent.session_id if intent else None,
    )


def _locate_intent(region: Region, params: Mapping[str, str]) -> Optional[PaymentIntent]:
    if region == Region.DOMESTIC:
        reference = params.get("reference") or params.get("trxref") or params.get("intent")
    else:
        reference = params.get("intent")

    if reference:
        return store.get_intent(reference)

    # PayPal appends its own ids to the return URL; use them when ours is missing
    for key in ("subscription_id", "token"):
        provider_reference = params.get(key)
        if provider_reference:
            intent = store.find_intent_by_provider_reference(region, provider_reference)
            if intent:
                return intent
    return None


def _has_reference(region: Region, params: Mapping[str, str]) -> bool:
    keys = ("reference", "trxref", "intent") if region == Region.DOMESTIC else ("intent", "subscription_id", "token")
    return any(params.get(k) for k in keys)


def _tier_for(intent: PaymentIntent) -> Optional[Tier]:
    plan = get_plan_definition(intent.plan_name)
    return plan.tier if plan else None


def _subscription_ref_for(intent: PaymentIntent) -> Optional[str]:
    # PayPal subscription intents are the subscription; Paystack reports its code later by webhook
    if intent.kind == IntentKind.RECURRING and intent.provider == Region.INTERNATIONAL:
        return intent.provider_reference
    return None


def _check_identity(intent: PaymentIntent, caller: Optional[CurrentUser]) -> None:
    if intent.user_id is None:
        return
    if caller is None:
        raise AuthenticationRequired("Login required to complete this payment")
    if caller.user_id != intent.user_id:
        raise IdentityMismatch("Payment belongs to a different account")


def grant_for_intent(
    intent: PaymentIntent,
    tier: Tier,
    *,
    subscription_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    """Grant the entitlement an intent paid for, keyed by the intent's reference."""
    if intent.is_anonymous:
        subject = AnonymousSubject(intent.session_id)
    else:
        subject = UserSubject(intent.user_id)
    end_date = compute_end_date(tier, now)
    result = store.grant(
        subject,
        tier,
        intent.provider,
        intent.reference,
        end_date,
        subscription_ref=subscription_ref,
        now=now,
    )
    store.mark_intent(intent.reference, IntentStatus.SUCCEEDED, now=now)
    return result


def handle_callback(
    provider: str,
    params: Mapping[str, str],
    caller: Optional[CurrentUser] = None,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    """
    Reconcile a gateway redirect.

    Never raises for payment outcomes: every result is a CallbackOutcome
    whose redirect_url() carries either the plan or a failure reason code.
    """
    region = Region(provider)
    if not _has_reference(region, params):
        return _failure(NO_REFERENCE)

    intent = _locate_intent(region, params)
    if intent is None or intent.provider != region:
        log_event("warning", "payments.callback_unknown_intent", provider=region.value, event_type="payments.callback", error_code=INVALID_INTENT)
        return _failure(INVALID_INTENT)

    try:
        _check_identity(intent, caller)
    except (AuthenticationRequired, IdentityMismatch) as e:
        log_event(
            "warning",
            "payments.callback_identity_mismatch",
            user_id=caller.user_id if caller else None,
            provider=region.value,
            reference=intent.reference,
            event_type="payments.callback",
            error_code=e.code,
        )
        return _failure(e.code, intent)

    tier = _tier_for(intent)
    if tier is None or (intent.is_anonymous and tier != Tier.DAYPASS):
        # Anonymous sessions may only ever hold a day pass
        return _failure(INVALID_INTENT, intent)

    state: Optional[SubscriptionState] = None
    if intent.status != IntentStatus.SUCCEEDED:
        provider_reference = intent.provider_reference or params.get("subscription_id") or params.get("token") or intent.reference
        try:
            gateway = get_gateway(region)
            result = gateway.capture_or_verify(provider_reference, intent.kind)
        except ProviderUnreachable as e:
            log_event("warning", "payments.verification_pending", provider=region.value, reference=intent.reference, event_type="payments.callback", error_code=e.code, extra={"detail": e.message})
            return _failure(VERIFICATION_PENDING, intent)
        except ConfigurationError as e:
            log_event("error", "payments.gateway_unavailable", provider=region.value, reference=intent.reference, event_type="payments.callback", error_code=e.code, extra={"detail": e.message})
            return _failure(PAYMENT_UNAVAILABLE, intent)
        except ProviderRejected as e:
            store.mark_intent(intent.reference, IntentStatus.FAILED, now=now)
            log_event("info", "payments.rejected", provider=region.value, reference=intent.reference, event_type="payments.callback", error_code=e.code, extra={"detail": e.message})
            return _failure(PAYMENT_FAILED, intent)

        if result.in_flight:
            log_event("info", "payments.verification_pending", provider=region.value, reference=intent.reference, event_type="payments.callback", extra={"raw_status": result.raw_status})
            return _failure(VERIFICATION_PENDING, intent)

        if not result.succeeded:
            store.mark_intent(intent.reference, IntentStatus.FAILED, now=now)
            log_event("info", "payments.not_successful", provider=region.value, reference=intent.reference, event_type="payments.callback", extra={"raw_status": result.raw_status})
            return _failure(PAYMENT_FAILED, intent)
        state = result.state

    subscription_ref = _subscription_ref_for(intent)
    try:
        granted = grant_for_intent(intent, tier, subscription_ref=subscription_ref, now=now)
    except SQLAlchemyError as e:
        # Verified at the gateway but not recorded; a retry or the webhook completes it
        log_event("error", "payments.grant_failed", user_id=intent.user_id, provider=region.value, reference=intent.reference, event_type="payments.callback", error_code=VERIFICATION_PENDING, extra={"detail": e})
        return _failure(VERIFICATION_PENDING, intent)

    # A recurring callback still awaiting approval is granted provisionally; the webhook corrects it
    pending = state == SubscriptionState.PENDING_APPROVAL
    log_event(
        "info",
        "payments.callback_succeeded",
        user_id=intent.user_id,
        session_id=intent.session_id,
        provider=region.value,
        reference=intent.reference,
        event_type="payments.callback",
        extra={"plan_name": intent.plan_name, "pending": pending, "applied": granted.applied},
    )
    return CallbackOutcome(
        success=True,
        plan_name=intent.plan_name,
        pending=pending,
        anonymous=intent.is_anonymous,
        session_id=intent.session_id,
        end_date=granted.end_date,
    )


def _find_intent_for_event(region: Region, event: WebhookEvent) -> Optional[PaymentIntent]:
    intent = store.get_intent(event.reference) if event.reference else None
    if intent is None and event.provider_reference:
        intent = store.find_intent_by_provider_reference(region, event.provider_reference)
    if intent is not None and intent.provider != region:
        return None
    return intent


def _apply_payment_succeeded(region: Region, event: WebhookEvent, now: Optional[datetime]) -> None:
    intent = _find_intent_for_event(region, event)
    if intent is not None:
        tier = _tier_for(intent)
        if tier is None or (intent.is_anonymous and tier != Tier.DAYPASS):
            log_event("warning", "payments.webhook_invalid_intent", provider=region.value, reference=intent.reference, event_type=event.event_type)
            return
        subscription_ref = _subscription_ref_for(intent)
        grant_for_intent(intent, tier, subscription_ref=subscription_ref, now=now)
        return

    if event.metadata.get("recurring") and event.customer_ref and event.provider_reference:
        user_id = store.find_user_by_customer_ref(event.customer_ref)
        if user_id:
            _grant_renewal(region, user_id, event.provider_reference, None, now)
            return

    log_event("warning", "payments.webhook_unmatched", provider=region.value, reference=event.reference, event_type=event.event_type)


def _grant_renewal(region: Region, user_id: str, reference: str, subscription_ref: Optional[str], now: Optional[datetime]) -> None:
    store.grant(
        UserSubject(user_id),
        Tier.MEMBER,
        region,
        reference,
        compute_end_date(Tier.MEMBER, now),
        subscription_ref=subscription_ref,
        now=now,
    )


def _apply_renewal_succeeded(region: Region, event: WebhookEvent, now: Optional[datetime]) -> None:
    if not (event.subscription_ref and event.provider_reference):
        log_event("warning", "payments.webhook_unknown_subscriber", provider=region.value, event_type=event.event_type)
        return

    # PayPal bills the first cycle with a sale too; that sale is the payment the intent stands for
    intent = store.find_intent_by_provider_reference(region, event.subscription_ref)
    if intent is not None and intent.kind == IntentKind.RECURRING:
        if store.claim_first_charge(intent.reference, event.provider_reference, now=now):
            tier = _tier_for(intent)
            if tier is not None:
                grant_for_intent(intent, tier, subscription_ref=event.subscription_ref, now=now)
                return

    user_id = store.find_user_by_subscription_ref(event.subscription_ref)
    if user_id is None:
        log_event("warning", "payments.webhook_unknown_subscriber", provider=region.value, event_type=event.event_type)
        return
    _grant_renewal(region, user_id, event.provider_reference, event.subscription_ref, now)


def _apply_subscription_activated(region: Region, event: WebhookEvent, now: Optional[datetime]) -> None:
    if not event.subscription_ref:
        return
    user_id = None
    intent = _find_intent_for_event(region, event)
    if intent is not None:
        user_id = intent.user_id
    if user_id is None and event.customer_ref:
        user_id = store.find_user_by_customer_ref(event.customer_ref)
    if user_id is None:
        user_id = store.find_user_by_subscription_ref(event.subscription_ref)
    if user_id is None:
        log_event("warning", "payments.webhook_unknown_subscriber", provider=region.value, event_type=event.event_type, extra={"subscription_ref": event.subscription_ref})
        return
    store.attach_subscription_ref(user_id, event.subscription_ref, now=now)


def _apply_webhook_event(region: Region, event: WebhookEvent, now: Optional[datetime] = None) -> None:
    if event.action == WebhookAction.PAYMENT_SUCCEEDED:
        _apply_payment_succeeded(region, event, now)
    elif event.action == WebhookAction.RENEWAL_SUCCEEDED:
        _apply_renewal_succeeded(region, event, now)
    elif event.action == WebhookAction.SUBSCRIPTION_ACTIVATED:
        _apply_subscription_activated(region, event, now)
    elif event.action in (WebhookAction.SUBSCRIPTION_CANCELLED, WebhookAction.SUBSCRIPTION_EXPIRED):
        status = SubscriptionStatus.CANCELLED if event.action == WebhookAction.SUBSCRIPTION_CANCELLED else SubscriptionStatus.EXPIRED
        user_id = store.set_status_by_subscription_ref(event.subscription_ref, status, now=now) if event.subscription_ref else None
        log_event("info", "payments.subscription_status", user_id=user_id, provider=region.value, event_type=event.event_type, extra={"status": status.value})
    elif event.action == WebhookAction.PAYMENT_FAILED:
        # No revocation before end_date; the gateway retries and later cancels
        user_id = store.find_user_by_subscription_ref(event.subscription_ref) if event.subscription_ref else None
        log_event("warning", "payments.renewal_failed", user_id=user_id, provider=region.value, event_type=event.event_type)
    else:
        log_event("info", "payments.webhook_ignored", provider=region.value, event_type=event.event_type)


def process_webhook(provider: str, headers: Mapping[str, str], body: bytes, now: Optional[datetime] = None) -> WebhookEvent:
    """
    Process a gateway webhook (idempotent).

    1. Verify signature and normalize
    2. Record in billing_events (skip if already processed)
    3. Apply state changes
    4. Mark processed, or record the error and re-raise so the gateway retries

    Raises:
        WebhookSignatureError: signature missing or invalid
        ConfigurationError: gateway not configured
    """
    region = Region(provider)
    gateway = get_gateway(region)
    event = gateway.parse_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                and_(
                    billing_events.c.provider == region.value,
                    billing_events.c.event_id == event.event_id,
                )
            )
        ).fetchone()

        if existing and existing[0]:
            log_event("info", "payments.webhook_duplicate", provider=region.value, event_type=event.event_type, extra={"event_id": event.event_id})
            return event

        if not existing:
            try:
                session.execute(
                    insert(billing_events).values(
                        provider=region.value,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
                session.commit()
            except IntegrityError:
                # Race condition: another worker recorded this event first
                session.rollback()
                return event

    try:
        _apply_webhook_event(region, event, now)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(and_(billing_events.c.provider == region.value, billing_events.c.event_id == event.event_id))
                .values(processed=True, processed_at=store.normalize_now(now), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(and_(billing_events.c.provider == region.value, billing_events.c.event_id == event.event_id))
                .values(error=str(e)[:1000])
            )
        raise

    return event

"""
Test webhook reconciliation.

Verifies signature rejection, duplicate event skipping, and that the
redirect and webhook paths for one payment yield a single grant.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from readerpass.core.auth import CurrentUser
from readerpass.core.database import billing_events, entitlement_grants, get_db_session
from readerpass.core.errors import WebhookSignatureError
from readerpass.features.billing import reconciliation
from readerpass.features.billing.provider import WebhookAction, WebhookEvent
from readerpass.features.billing.reconciliation import handle_callback, process_webhook
from readerpass.features.billing.registry import set_gateway
from readerpass.features.billing.service import initiate_payment
from readerpass.features.entitlements import store
from readerpass.features.entitlements.service import check_anonymous_entitlement, get_user_entitlement
from readerpass.models.plan import Region, Tier
from readerpass.models.region import RegionResult
from readerpass.models.subscription import SubscriptionStatus
from readerpass.tests.fakes import FAKE_SIGNATURE_HEADER, FakeGateway

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SESSION = "sess_" + "d" * 40
SIGNED = {FAKE_SIGNATURE_HEADER: "valid"}
ALICE = CurrentUser("user_alice", email="reader@example.com")
DOMESTIC = RegionResult(region_code=Region.DOMESTIC, country_code="NG", is_domestic=True)
INTERNATIONAL = RegionResult(region_code=Region.INTERNATIONAL, country_code="US", is_domestic=False)


@pytest.fixture
def paystack():
    gateway = FakeGateway("domestic")
    set_gateway(Region.DOMESTIC, gateway)
    return gateway


@pytest.fixture
def paypal():
    gateway = FakeGateway("international")
    set_gateway(Region.INTERNATIONAL, gateway)
    return gateway


def ledger_count() -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(entitlement_grants)).scalar()


def recorded_events():
    with get_db_session() as session:
        return session.execute(select(billing_events)).fetchall()


def test_invalid_signature_rejected_and_not_recorded(paystack):
    paystack.webhook_event = WebhookEvent(event_id="e1", event_type="charge.success", action=WebhookAction.PAYMENT_SUCCEEDED)
    with pytest.raises(WebhookSignatureError):
        process_webhook("domestic", {FAKE_SIGNATURE_HEADER: "forged"}, b"{}")
    assert recorded_events() == []


def test_redirect_then_webhook_grants_once(paystack):
    started = initiate_payment("Day Pass", DOMESTIC, session_id=SESSION, now=NOW)
    callback = handle_callback("domestic", {"reference": started.reference}, None, now=NOW)

    paystack.webhook_event = WebhookEvent(
        event_id="charge.success:1",
        event_type="charge.success",
        action=WebhookAction.PAYMENT_SUCCEEDED,
        reference=started.reference,
        provider_reference=started.reference,
        metadata={"recurring": False},
    )
    process_webhook("domestic", SIGNED, b'{"event": "charge.success"}', now=NOW + timedelta(minutes=1))

    assert ledger_count() == 1
    assert check_anonymous_entitlement(SESSION, now=NOW).end_date == callback.end_date


def test_webhook_then_redirect_grants_once(paypal):
    started = initiate_payment("Day Pass", INTERNATIONAL, session_id=SESSION, now=NOW)
    paypal.webhook_event = WebhookEvent(
        event_id="WH-1",
        event_type="PAYMENT.CAPTURE.COMPLETED",
        action=WebhookAction.PAYMENT_SUCCEEDED,
        reference=started.reference,
        provider_reference="ORDER-1",
    )
    process_webhook("international", SIGNED, b"{}", now=NOW)
    assert check_anonymous_entitlement(SESSION, now=NOW).active

    outcome = handle_callback("international", {"intent": started.reference}, None, now=NOW + timedelta(minutes=2))
    assert outcome.success
    assert outcome.end_date == NOW + timedelta(hours=3)
    assert ledger_count() == 1
    assert "capture_or_verify" not in paypal.call_names()


def test_duplicate_event_processed_once(paypal):
    paypal.webhook_event = WebhookEvent(event_id="WH-9", event_type="CHECKOUT.ORDER.APPROVED", action=WebhookAction.IGNORED)

    first = process_webhook("international", SIGNED, b"{}")
    second = process_webhook("international", SIGNED, b"{}")

    assert first.event_id == second.event_id == "WH-9"
    rows = recorded_events()
    assert len(rows) == 1
    assert rows[0].processed is True
    assert rows[0].provider == "international"


def test_failed_processing_is_recorded_and_retried(paypal, monkeypatch):
    paypal.webhook_event = WebhookEvent(event_id="WH-10", event_type="PAYMENT.SALE.COMPLETED", action=WebhookAction.IGNORED)
    calls = []

    def flaky(region, event, now=None):
        calls.append(event.event_id)
        if len(calls) == 1:
            raise RuntimeError("database blip")

    monkeypatch.setattr(reconciliation, "_apply_webhook_event", flaky)

    with pytest.raises(RuntimeError):
        process_webhook("international", SIGNED, b"{}")
    row = recorded_events()[0]
    assert row.processed is False
    assert "database blip" in row.error

    process_webhook("international", SIGNED, b"{}")
    assert recorded_events()[0].processed is True
    assert len(calls) == 2


def sale_event(event_id: str, sale_id: str, subscription_ref: str = "I-SUB-1") -> WebhookEvent:
    return WebhookEvent(
        event_id=event_id,
        event_type="PAYMENT.SALE.COMPLETED",
        action=WebhookAction.RENEWAL_SUCCEEDED,
        provider_reference=sale_id,
        subscription_ref=subscription_ref,
    )


def test_first_paypal_sale_after_redirect_grants_once(paypal):
    started = initiate_payment("Member", INTERNATIONAL, user=ALICE, now=NOW)
    callback = handle_callback("international", {"intent": started.reference}, ALICE, now=NOW)

    paypal.webhook_event = sale_event("WH-19", "SALE-1")
    process_webhook("international", SIGNED, b"{}", now=NOW + timedelta(minutes=10))

    assert ledger_count() == 1
    assert get_user_entitlement("user_alice", now=NOW).end_date == callback.end_date == NOW + timedelta(days=7)


def test_first_paypal_sale_before_redirect_grants_once(paypal):
    started = initiate_payment("Member", INTERNATIONAL, user=ALICE, now=NOW)

    paypal.webhook_event = sale_event("WH-18", "SALE-1")
    process_webhook("international", SIGNED, b"{}", now=NOW)
    assert get_user_entitlement("user_alice", now=NOW).active

    outcome = handle_callback("international", {"intent": started.reference}, ALICE, now=NOW + timedelta(minutes=3))
    assert outcome.success
    assert outcome.end_date == NOW + timedelta(days=7)
    assert ledger_count() == 1
    assert "capture_or_verify" not in paypal.call_names()


def test_paypal_renewal_extends_membership(paypal):
    started = initiate_payment("Member", INTERNATIONAL, user=ALICE, now=NOW)
    handle_callback("international", {"intent": started.reference}, ALICE, now=NOW)
    paypal.webhook_event = sale_event("WH-19", "SALE-1")
    process_webhook("international", SIGNED, b"{}", now=NOW + timedelta(minutes=10))

    renewal_at = NOW + timedelta(days=7)
    paypal.webhook_event = sale_event("WH-20", "SALE-2")
    process_webhook("international", SIGNED, b"{}", now=renewal_at)

    entitlement = get_user_entitlement("user_alice", now=renewal_at + timedelta(days=1))
    assert entitlement.active
    assert entitlement.end_date == renewal_at + timedelta(days=7)
    assert ledger_count() == 2


def test_paystack_subscription_lifecycle(paystack):
    started = initiate_payment("Member", DOMESTIC, user=ALICE, now=NOW)
    handle_callback("domestic", {"reference": started.reference}, ALICE, now=NOW)
    member_end = NOW + timedelta(days=7)

    # subscription.create arrives with the customer code stored at initiation
    paystack.webhook_event = WebhookEvent(
        event_id="subscription.create:SUB_1",
        event_type="subscription.create",
        action=WebhookAction.SUBSCRIPTION_ACTIVATED,
        subscription_ref="SUB_1",
        customer_ref="CUS_reader",
    )
    process_webhook("domestic", SIGNED, b"create", now=NOW)
    assert store.find_user_by_subscription_ref("SUB_1") == "user_alice"
    assert get_user_entitlement("user_alice", now=NOW).end_date == member_end

    # Renewal charge: a new transaction reference carrying the plan
    renewal_at = member_end - timedelta(minutes=5)
    paystack.webhook_event = WebhookEvent(
        event_id="charge.success:77",
        event_type="charge.success",
        action=WebhookAction.PAYMENT_SUCCEEDED,
        reference="T-renewal-77",
        provider_reference="T-renewal-77",
        customer_ref="CUS_reader",
        metadata={"recurring": True},
    )
    process_webhook("domestic", SIGNED, b"renew", now=renewal_at)
    renewed_end = renewal_at + timedelta(days=7)
    assert get_user_entitlement("user_alice", now=member_end + timedelta(days=1)).end_date == renewed_end

    # Cancellation keeps access to the end of the paid window
    paystack.webhook_event = WebhookEvent(
        event_id="subscription.disable:SUB_1",
        event_type="subscription.disable",
        action=WebhookAction.SUBSCRIPTION_CANCELLED,
        subscription_ref="SUB_1",
    )
    process_webhook("domestic", SIGNED, b"disable", now=renewal_at)
    cancelled = get_user_entitlement("user_alice", now=renewal_at + timedelta(days=1))
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.active
    assert cancelled.tier == Tier.MEMBER
    assert not get_user_entitlement("user_alice", now=renewed_end).active


def test_payment_failure_only_logs(paypal):
    started = initiate_payment("Member", INTERNATIONAL, user=ALICE, now=NOW)
    handle_callback("international", {"intent": started.reference}, ALICE, now=NOW)

    paypal.webhook_event = WebhookEvent(
        event_id="WH-30",
        event_type="BILLING.SUBSCRIPTION.PAYMENT.FAILED",
        action=WebhookAction.PAYMENT_FAILED,
        subscription_ref="I-SUB-1",
    )
    process_webhook("international", SIGNED, b"{}", now=NOW + timedelta(days=1))
    assert get_user_entitlement("user_alice", now=NOW + timedelta(days=1)).active

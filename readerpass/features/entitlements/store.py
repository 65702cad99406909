"""
Entitlement store.

Durable state for subscriptions, anonymous day passes and payment intents.
Every entitlement write goes through grant(), which records a ledger row
keyed by (subject, reference) in the same transaction as the subject update.
The ledger's unique constraint makes a repeated grant a no-op.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import insert, select, update, and_
from sqlalchemy.exc import IntegrityError

from readerpass.core.database import (
    anonymous_day_passes,
    as_utc,
    entitlement_grants,
    get_db_session,
    payment_intents,
    subscriptions,
)
from readerpass.core.logging import log_event
from readerpass.models.payment import IntentKind, IntentStatus, PaymentIntent
from readerpass.models.plan import Region, TIER_RANK, Tier
from readerpass.models.subscription import (
    AnonymousSubject,
    Entitlement,
    GrantResult,
    SubscriptionStatus,
    UserSubject,
)

logger = logging.getLogger("readerpass")

Subject = Union[UserSubject, AnonymousSubject]

# Statuses that still grant access while end_date is in the future
_LIVE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value}


def normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _user_entitlement(row, now: datetime) -> Entitlement:
    tier = Tier(row.tier)
    status = SubscriptionStatus(row.status)
    end_date = as_utc(row.end_date)
    provider = row.provider if row.provider != "none" else None

    if status.value not in _LIVE_STATUSES:
        return Entitlement(tier=tier, status=status, active=False, end_date=end_date, provider=provider)

    if end_date is None:
        # Provider-managed cadence: only an uncancelled row is live without a date
        active = status == SubscriptionStatus.ACTIVE
        return Entitlement(tier=tier, status=status, active=active, end_date=None, provider=provider)

    if end_date <= now:
        # Derived expiry: reported expired without writing
        return Entitlement(tier=tier, status=SubscriptionStatus.EXPIRED, active=False, end_date=end_date, provider=provider)

    return Entitlement(tier=tier, status=status, active=True, end_date=end_date, provider=provider)


def _session_entitlement(row, now: datetime) -> Entitlement:
    if row.merged_user_id:
        # The account owns it now
        return Entitlement.none()
    expires_at = as_utc(row.expires_at)
    if expires_at <= now:
        return Entitlement(tier=Tier.DAYPASS, status=SubscriptionStatus.EXPIRED, active=False, end_date=expires_at, provider=row.provider)
    return Entitlement(tier=Tier.DAYPASS, status=SubscriptionStatus.ACTIVE, active=True, end_date=expires_at, provider=row.provider)


def get_entitlement(subject: Subject, now: Optional[datetime] = None) -> Entitlement:
    """Current entitlement for a subject, with expiry derived from end_date."""
    now_ts = normalize_now(now)
    with get_db_session() as session:
        if isinstance(subject, UserSubject):
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == subject.user_id)
            ).fetchone()
            return _user_entitlement(row, now_ts) if row else Entitlement.none()

        row = session.execute(
            select(anonymous_day_passes).where(anonymous_day_passes.c.session_id == subject.session_id)
        ).fetchone()
        return _session_entitlement(row, now_ts) if row else Entitlement.none()


def get_day_pass(session_id: str):
    with get_db_session() as session:
        return session.execute(
            select(anonymous_day_passes).where(anonymous_day_passes.c.session_id == session_id)
        ).fetchone()


def _keeps_existing(row, tier: Tier, end_date: Optional[datetime], now: datetime) -> bool:
    """True when the stored entitlement outranks the incoming grant."""
    current = _user_entitlement(row, now)
    if not current.active:
        return False
    if TIER_RANK[current.tier] <= TIER_RANK[tier]:
        return False
    if current.end_date is None:
        return True
    return end_date is not None and current.end_date >= end_date


def grant(
    subject: Subject,
    tier: Tier,
    provider: Union[Region, str],
    reference: str,
    end_date: Optional[datetime],
    *,
    subscription_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    """
    Record an entitlement grant (idempotent on subject + reference).

    Returns:
        GrantResult(applied=True) when the subject's record was written.
        A duplicate reference returns applied=False with the first grant's end date.
        A grant that would downgrade a higher, longer entitlement is recorded
        in the ledger but leaves the subject untouched (applied=False).
    """
    now_ts = normalize_now(now)
    provider_value = Region(provider).value
    end_ts = as_utc(end_date)

    if isinstance(subject, AnonymousSubject) and tier != Tier.DAYPASS:
        raise ValueError("Anonymous sessions can only hold a day pass")
    if isinstance(subject, AnonymousSubject) and end_ts is None:
        raise ValueError("A day pass needs an end date")

    with get_db_session() as session:
        try:
            session.execute(
                insert(entitlement_grants).values(
                    subject_kind=subject.kind,
                    subject_id=subject.subject_id,
                    reference=reference,
                    provider=provider_value,
                    tier=tier.value,
                    end_date=end_ts,
                    created_at=now_ts,
                )
            )
        except IntegrityError:
            session.rollback()
            existing = session.execute(
                select(entitlement_grants.c.end_date).where(
                    and_(
                        entitlement_grants.c.subject_kind == subject.kind,
                        entitlement_grants.c.subject_id == subject.subject_id,
                        entitlement_grants.c.reference == reference,
                    )
                )
            ).fetchone()
            log_event(
                "info",
                "entitlements.grant_duplicate",
                provider=provider_value,
                reference=reference,
                event_type="entitlements.duplicate",
            )
            return GrantResult(applied=False, end_date=as_utc(existing[0]) if existing else end_ts)

        if isinstance(subject, AnonymousSubject):
            _upsert_day_pass(session, subject.session_id, provider_value, reference, end_ts, now_ts)
            applied = True
        else:
            applied = _upsert_subscription(session, subject.user_id, tier, provider_value, reference, end_ts, subscription_ref, now_ts)

    log_event(
        "info",
        "entitlements.granted" if applied else "entitlements.grant_kept_existing",
        user_id=subject.subject_id if isinstance(subject, UserSubject) else None,
        session_id=subject.subject_id if isinstance(subject, AnonymousSubject) else None,
        provider=provider_value,
        reference=reference,
        event_type="entitlements.grant",
        extra={"tier": tier.value, "end_date": end_ts.isoformat() if end_ts else None},
    )
    return GrantResult(applied=applied, end_date=end_ts)


def _insert_if_absent(session, statement) -> bool:
    """Run an INSERT in a savepoint. False when another transaction created the row first."""
    savepoint = session.begin_nested()
    try:
        session.execute(statement)
    except IntegrityError:
        savepoint.rollback()
        return False
    savepoint.commit()
    return True


def _locked_day_pass(session, session_id: str):
    return session.execute(
        select(anonymous_day_passes.c.session_id)
        .where(anonymous_day_passes.c.session_id == session_id)
        .with_for_update()
    ).fetchone()


def _locked_subscription(session, user_id: str):
    return session.execute(
        select(subscriptions).where(subscriptions.c.user_id == user_id).with_for_update()
    ).fetchone()


def _upsert_day_pass(session, session_id: str, provider: str, reference: str, end_date: datetime, now: datetime) -> None:
    values = dict(
        provider=provider,
        transaction_ref=reference,
        created_at=now,
        expires_at=end_date,
        merged_user_id=None,
        merged_at=None,
    )
    if _locked_day_pass(session, session_id) is None:
        if _insert_if_absent(session, insert(anonymous_day_passes).values(session_id=session_id, **values)):
            return
    session.execute(
        update(anonymous_day_passes)
        .where(anonymous_day_passes.c.session_id == session_id)
        .values(**values)
    )


def _upsert_subscription(
    session,
    user_id: str,
    tier: Tier,
    provider: str,
    reference: str,
    end_date: Optional[datetime],
    subscription_ref: Optional[str],
    now: datetime,
) -> bool:
    values = dict(
        tier=tier.value,
        status=SubscriptionStatus.ACTIVE.value,
        end_date=end_date,
        provider=provider,
        provider_transaction_ref=reference,
        updated_at=now,
    )
    if subscription_ref:
        values["provider_subscription_ref"] = subscription_ref

    row = _locked_subscription(session, user_id)
    if row is None:
        if _insert_if_absent(session, insert(subscriptions).values(user_id=user_id, created_at=now, **values)):
            return True
        # Created by a concurrent grant after our read
        row = _locked_subscription(session, user_id)

    if _keeps_existing(row, tier, end_date, now):
        return False

    session.execute(
        update(subscriptions).where(subscriptions.c.user_id == user_id).values(**values)
    )
    return True


def mark_day_pass_merged(session_id: str, user_id: str, now: Optional[datetime] = None) -> bool:
    """Record the merge; only the first claimant wins."""
    now_ts = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(anonymous_day_passes)
            .where(
                and_(
                    anonymous_day_passes.c.session_id == session_id,
                    anonymous_day_passes.c.merged_user_id.is_(None),
                )
            )
            .values(merged_user_id=user_id, merged_at=now_ts)
        )
        return result.rowcount > 0


def _ensure_subscription_row(session, user_id: str, now: datetime) -> None:
    if _locked_subscription(session, user_id) is not None:
        return
    _insert_if_absent(
        session,
        insert(subscriptions).values(
            user_id=user_id,
            tier=Tier.FREE.value,
            status=SubscriptionStatus.FREE.value,
            provider="none",
            created_at=now,
            updated_at=now,
        ),
    )


def get_customer_ref(user_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.provider_customer_ref).where(subscriptions.c.user_id == user_id)
        ).fetchone()
        return row[0] if row else None


def save_customer_ref(user_id: str, customer_ref: str, now: Optional[datetime] = None) -> None:
    now_ts = normalize_now(now)
    with get_db_session() as session:
        _ensure_subscription_row(session, user_id, now_ts)
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(provider_customer_ref=customer_ref, updated_at=now_ts)
        )


def attach_subscription_ref(user_id: str, subscription_ref: str, now: Optional[datetime] = None) -> None:
    """Link a gateway subscription id to the user's row without touching the window."""
    now_ts = normalize_now(now)
    with get_db_session() as session:
        _ensure_subscription_row(session, user_id, now_ts)
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(provider_subscription_ref=subscription_ref, updated_at=now_ts)
        )


def find_user_by_subscription_ref(subscription_ref: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.user_id).where(subscriptions.c.provider_subscription_ref == subscription_ref)
        ).fetchone()
        return row[0] if row else None


def find_user_by_customer_ref(customer_ref: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.user_id).where(subscriptions.c.provider_customer_ref == customer_ref)
        ).fetchone()
        return row[0] if row else None


def set_status_by_subscription_ref(
    subscription_ref: str,
    status: SubscriptionStatus,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Set status on the row holding this gateway subscription. Returns the user id, if any."""
    now_ts = normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.user_id).where(subscriptions.c.provider_subscription_ref == subscription_ref)
        ).fetchone()
        if not row:
            return None
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == row[0])
            .values(status=status.value, updated_at=now_ts)
        )
        return row[0]


def _row_to_intent(row) -> PaymentIntent:
    return PaymentIntent(
        reference=row.reference,
        user_id=row.user_id,
        session_id=row.session_id,
        plan_name=row.plan_name,
        provider=Region(row.provider),
        provider_reference=row.provider_reference,
        amount=row.amount,
        currency=row.currency,
        kind=IntentKind(row.kind),
        status=IntentStatus(row.status),
        created_at=as_utc(row.created_at),
    )


def create_intent(intent: PaymentIntent) -> None:
    with get_db_session() as session:
        session.execute(
            insert(payment_intents).values(
                reference=intent.reference,
                user_id=intent.user_id,
                session_id=intent.session_id,
                plan_name=intent.plan_name,
                provider=intent.provider.value,
                provider_reference=intent.provider_reference,
                amount=intent.amount,
                currency=intent.currency,
                kind=intent.kind.value,
                status=intent.status.value,
                created_at=as_utc(intent.created_at),
                updated_at=as_utc(intent.created_at),
            )
        )


def get_intent(reference: str) -> Optional[PaymentIntent]:
    with get_db_session() as session:
        row = session.execute(
            select(payment_intents).where(payment_intents.c.reference == reference)
        ).fetchone()
        return _row_to_intent(row) if row else None


def find_intent_by_provider_reference(provider: Union[Region, str], provider_reference: str) -> Optional[PaymentIntent]:
    with get_db_session() as session:
        row = session.execute(
            select(payment_intents).where(
                and_(
                    payment_intents.c.provider == Region(provider).value,
                    payment_intents.c.provider_reference == provider_reference,
                )
            )
        ).fetchone()
        return _row_to_intent(row) if row else None


def set_intent_provider_reference(reference: str, provider_reference: str, now: Optional[datetime] = None) -> None:
    with get_db_session() as session:
        session.execute(
            update(payment_intents)
            .where(payment_intents.c.reference == reference)
            .values(provider_reference=provider_reference, updated_at=normalize_now(now))
        )


def mark_intent(reference: str, status: IntentStatus, now: Optional[datetime] = None) -> None:
    """Move a pending intent to a terminal status. A succeeded intent never goes back."""
    with get_db_session() as session:
        session.execute(
            update(payment_intents)
            .where(
                and_(
                    payment_intents.c.reference == reference,
                    payment_intents.c.status != IntentStatus.SUCCEEDED.value,
                )
            )
            .values(status=status.value, updated_at=normalize_now(now))
        )


def claim_first_charge(reference: str, charge_ref: str, now: Optional[datetime] = None) -> bool:
    """
    Attribute a recurring charge to the intent's first billing cycle.

    True when this charge is (or already was) the first one seen for the
    intent; False when a different charge got there first, which makes this
    one a renewal.
    """
    with get_db_session() as session:
        claimed = session.execute(
            update(payment_intents)
            .where(
                and_(
                    payment_intents.c.reference == reference,
                    payment_intents.c.first_charge_ref.is_(None),
                )
            )
            .values(first_charge_ref=charge_ref, updated_at=normalize_now(now))
        ).rowcount
        if claimed:
            return True
        current = session.execute(
            select(payment_intents.c.first_charge_ref).where(payment_intents.c.reference == reference)
        ).scalar()
        return current == charge_ref

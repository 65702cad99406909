"""
readerpass/features/entitlements/service.py

Entitlement read path and anonymous day pass merge.

Handles:
- Entitlement lookups for users and anonymous sessions
- Merging an anonymous day pass into an account at login (safe to repeat)
- Grant end-date computation per tier
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from readerpass.core.config import settings
from readerpass.core.database import as_utc
from readerpass.core.logging import log_event
from readerpass.features.entitlements import store
from readerpass.models.plan import TIER_RANK, Tier
from readerpass.models.subscription import (
    AnonymousSubject,
    Entitlement,
    MergeResult,
    UserSubject,
)


logger = logging.getLogger(__name__)


def compute_end_date(tier: Tier, now: Optional[datetime] = None) -> datetime:
    """End of the access window a successful payment buys."""
    now_ts = store.normalize_now(now)
    if tier == Tier.DAYPASS:
        return now_ts + timedelta(hours=settings.DAYPASS_WINDOW_HOURS)
    if tier == Tier.MEMBER:
        return now_ts + timedelta(days=settings.MEMBER_CYCLE_DAYS)
    raise ValueError(f"No access window for tier: {tier}")


def get_user_entitlement(user_id: str, now: Optional[datetime] = None) -> Entitlement:
    return store.get_entitlement(UserSubject(user_id), now=now)


def check_anonymous_entitlement(session_id: Optional[str], now: Optional[datetime] = None) -> Entitlement:
    """Day pass state for an anonymous session; no session means no entitlement."""
    if not session_id:
        return Entitlement.none()
    return store.get_entitlement(AnonymousSubject(session_id), now=now)


def resolve_entitlement(
    user_id: Optional[str],
    session_id: Optional[str],
    now: Optional[datetime] = None,
) -> Entitlement:
    """
    Entitlement for whoever is reading.

    An authenticated reader uses their account; an active anonymous pass on
    the same browser still counts until it is merged.
    """
    if user_id:
        entitlement = get_user_entitlement(user_id, now=now)
        if entitlement.active:
            return entitlement
        anonymous = check_anonymous_entitlement(session_id, now=now)
        return anonymous if anonymous.active else entitlement
    return check_anonymous_entitlement(session_id, now=now)


def merge_anonymous_day_pass(session_id: str, user_id: str, now: Optional[datetime] = None) -> MergeResult:
    """
    Move an unexpired anonymous day pass onto a user account.

    The grant is keyed by the pass's transaction reference, so calling this
    on every login is safe. An account already holding an active entitlement
    of equal or higher tier is left as it is.
    """
    now_ts = store.normalize_now(now)
    row = store.get_day_pass(session_id)
    if row is None:
        return MergeResult.NO_PASS

    if row.merged_user_id:
        return MergeResult.ALREADY_MERGED

    expires_at = as_utc(row.expires_at)
    if expires_at <= now_ts:
        return MergeResult.NO_PASS

    current = get_user_entitlement(user_id, now=now_ts)
    if current.active and TIER_RANK[current.tier] >= TIER_RANK[Tier.DAYPASS]:
        store.mark_day_pass_merged(session_id, user_id, now=now_ts)
        log_event(
            "info",
            "entitlements.merge_kept_existing",
            user_id=user_id,
            session_id=session_id,
            event_type="entitlements.merge",
            extra={"tier": current.tier.value},
        )
        return MergeResult.KEPT_EXISTING

    store.grant(
        UserSubject(user_id),
        Tier.DAYPASS,
        row.provider,
        row.transaction_ref,
        expires_at,
        now=now_ts,
    )
    if not store.mark_day_pass_merged(session_id, user_id, now=now_ts):
        # A concurrent login claimed it first; the grant above was keyed the same way
        return MergeResult.ALREADY_MERGED

    log_event(
        "info",
        "entitlements.merged",
        user_id=user_id,
        session_id=session_id,
        provider=row.provider,
        reference=row.transaction_ref,
        event_type="entitlements.merge",
    )
    return MergeResult.MERGED

"""Tests for merging an anonymous day pass into an account."""

from datetime import datetime, timedelta, timezone

from readerpass.features.entitlements import store
from readerpass.features.entitlements.service import (
    check_anonymous_entitlement,
    get_user_entitlement,
    merge_anonymous_day_pass,
    resolve_entitlement,
)
from readerpass.models.plan import Region, Tier
from readerpass.models.subscription import AnonymousSubject, MergeResult, UserSubject

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SESSION = "sess_" + "a" * 40


def buy_day_pass(session_id=SESSION, at=NOW, reference="rp-daypass-1"):
    end = at + timedelta(hours=3)
    store.grant(AnonymousSubject(session_id), Tier.DAYPASS, Region.INTERNATIONAL, reference, end, now=at)
    return end


def test_merge_moves_pass_with_same_end_date():
    end = buy_day_pass()

    assert merge_anonymous_day_pass(SESSION, "user_alice", now=NOW + timedelta(minutes=5)) == MergeResult.MERGED

    user = get_user_entitlement("user_alice", now=NOW + timedelta(minutes=5))
    assert user.active and user.tier == Tier.DAYPASS
    assert user.end_date == end
    # The account owns it now
    assert not check_anonymous_entitlement(SESSION, now=NOW + timedelta(minutes=5)).active


def test_merge_twice_is_a_no_op():
    buy_day_pass()
    merge_anonymous_day_pass(SESSION, "user_alice", now=NOW)
    assert merge_anonymous_day_pass(SESSION, "user_alice", now=NOW) == MergeResult.ALREADY_MERGED
    assert merge_anonymous_day_pass(SESSION, "user_mallory", now=NOW) == MergeResult.ALREADY_MERGED
    assert not get_user_entitlement("user_mallory", now=NOW).active


def test_no_pass_and_expired_pass():
    assert merge_anonymous_day_pass(SESSION, "user_alice", now=NOW) == MergeResult.NO_PASS

    buy_day_pass()
    assert merge_anonymous_day_pass(SESSION, "user_alice", now=NOW + timedelta(hours=3)) == MergeResult.NO_PASS
    assert not get_user_entitlement("user_alice", now=NOW).active


def test_merge_into_active_member_keeps_membership():
    member_end = NOW + timedelta(days=7)
    store.grant(UserSubject("user_alice"), Tier.MEMBER, Region.DOMESTIC, "member-ref", member_end, now=NOW)
    buy_day_pass()

    assert merge_anonymous_day_pass(SESSION, "user_alice", now=NOW) == MergeResult.KEPT_EXISTING

    user = get_user_entitlement("user_alice", now=NOW)
    assert user.tier == Tier.MEMBER
    assert user.end_date == member_end


def test_repurchase_on_same_session_after_merge_is_reported_again():
    buy_day_pass()
    merge_anonymous_day_pass(SESSION, "user_alice", now=NOW)

    later = NOW + timedelta(hours=4)
    buy_day_pass(at=later, reference="rp-daypass-2")
    assert check_anonymous_entitlement(SESSION, now=later).active


def test_resolve_entitlement_prefers_account_then_session():
    buy_day_pass()
    assert resolve_entitlement(None, SESSION, now=NOW).active
    assert resolve_entitlement("user_nobody", SESSION, now=NOW).active
    assert not resolve_entitlement("user_nobody", None, now=NOW).active
    assert not resolve_entitlement(None, None, now=NOW).active

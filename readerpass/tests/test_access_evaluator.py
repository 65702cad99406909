"""Tests for per-unit access decisions."""

from datetime import datetime, timezone

import pytest

from readerpass.features.access.evaluator import InMemoryContentSource, can_access, gate_content_units
from readerpass.models.plan import Tier
from readerpass.models.subscription import Entitlement, SubscriptionStatus

ACTIVE = Entitlement(tier=Tier.DAYPASS, status=SubscriptionStatus.ACTIVE, active=True, end_date=datetime(2030, 1, 1, tzinfo=timezone.utc))
INACTIVE = Entitlement.none()


@pytest.mark.parametrize("index", [0, 1, 2, 3])
def test_preview_units_open_to_everyone(index):
    assert can_access(index, INACTIVE, preview_limit=4)
    assert can_access(index, None, preview_limit=4)


@pytest.mark.parametrize("index", [4, 5, 100])
def test_units_past_preview_need_active_entitlement(index):
    assert not can_access(index, INACTIVE, preview_limit=4)
    assert not can_access(index, None, preview_limit=4)
    assert can_access(index, ACTIVE, preview_limit=4)


def test_negative_index_denied():
    assert not can_access(-1, ACTIVE, preview_limit=4)


def test_expired_entitlement_is_not_active():
    expired = Entitlement(tier=Tier.MEMBER, status=SubscriptionStatus.EXPIRED, active=False)
    assert not can_access(4, expired, preview_limit=4)


def test_zero_preview_locks_everything():
    assert not can_access(0, INACTIVE, preview_limit=0)


def test_default_limit_comes_from_settings(monkeypatch):
    from readerpass.core.config import settings
    monkeypatch.setattr(settings, "FREE_PREVIEW_LIMIT", 2)
    assert can_access(1, INACTIVE)
    assert not can_access(2, INACTIVE)


def test_gate_content_units_strips_locked_payloads():
    source = InMemoryContentSource({"issue-1": [{"id": i, "url": f"https://cdn/p{i}.jpg"} for i in range(6)]})

    gated = gate_content_units(source, "issue-1", INACTIVE, preview_limit=4)

    assert [u.unlocked for u in gated] == [True, True, True, True, False, False]
    assert gated[3].data["url"] == "https://cdn/p3.jpg"
    assert gated[4].data is None
    assert gated[4].unit_id == "4"

    unlocked = gate_content_units(source, "issue-1", ACTIVE, preview_limit=4)
    assert all(u.unlocked for u in unlocked)


def test_gate_unknown_item_is_none():
    assert gate_content_units(InMemoryContentSource(), "missing", ACTIVE) is None

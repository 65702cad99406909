"""
readerpass/models/subscription.py

Entitlement state models.

A Subject is either an authenticated user or an anonymous browser session.
The two are distinct types so a session token can never be mistaken for a
user id (or the reverse) at a call site.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from readerpass.models.plan import Tier


class SubscriptionStatus(str, Enum):
    FREE = "free"
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class UserSubject:
    user_id: str

    kind = "user"

    @property
    def subject_id(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class AnonymousSubject:
    session_id: str

    kind = "session"

    @property
    def subject_id(self) -> str:
        return self.session_id


class Entitlement(BaseModel):
    """Read-time view of a subject's access, after derived expiry."""
    model_config = ConfigDict(frozen=True)

    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.FREE
    active: bool = False
    end_date: Optional[datetime] = None
    provider: Optional[str] = None

    @classmethod
    def none(cls) -> "Entitlement":
        return cls()


class GrantResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    applied: bool
    end_date: Optional[datetime] = None


class MergeResult(str, Enum):
    MERGED = "merged"
    NO_PASS = "no_pass"
    ALREADY_MERGED = "already_merged"
    KEPT_EXISTING = "kept_existing"

"""
readerpass/models/plan.py

Plan and pricing models.

Plans are static configuration. Each plan is priced in every region,
in the minor unit of that region's currency (kobo for NGN, cents for USD).
"""

from enum import Enum
from typing import Dict
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    FREE = "free"
    MEMBER = "member"
    DAYPASS = "daypass"


# Higher rank wins when two active entitlements compete
TIER_RANK = {
    Tier.FREE: 0,
    Tier.DAYPASS: 1,
    Tier.MEMBER: 2,
}


class Cadence(str, Enum):
    ONE_TIME = "one_time"
    WEEKLY = "weekly"


class Region(str, Enum):
    """Pricing region. Doubles as the gateway name: one gateway per region."""
    DOMESTIC = "domestic"
    INTERNATIONAL = "international"


class Price(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: int
    currency: str


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    tier: Tier
    cadence: Cadence
    prices: Dict[Region, Price]

    @property
    def is_recurring(self) -> bool:
        return self.cadence != Cadence.ONE_TIME


class PlanPrice(BaseModel):
    """A plan resolved to a single region."""
    model_config = ConfigDict(frozen=True)

    name: str
    tier: Tier
    cadence: Cadence
    region: Region
    amount: int
    currency: str

    @property
    def is_recurring(self) -> bool:
        return self.cadence != Cadence.ONE_TIME

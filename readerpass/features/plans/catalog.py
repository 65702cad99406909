"""
Plan catalog.

Static plan definitions and per-region price resolution. Pure functions only.
"""
from typing import Dict, List, Optional

from readerpass.models.plan import Cadence, Plan, PlanPrice, Price, Region, Tier

MEMBER_PLAN = "Member"
DAY_PASS_PLAN = "Day Pass"

PLANS: Dict[str, Plan] = {
    MEMBER_PLAN: Plan(
        name=MEMBER_PLAN,
        tier=Tier.MEMBER,
        cadence=Cadence.WEEKLY,
        prices={
            Region.DOMESTIC: Price(amount=100000, currency="NGN"),
            Region.INTERNATIONAL: Price(amount=199, currency="USD"),
        },
    ),
    DAY_PASS_PLAN: Plan(
        name=DAY_PASS_PLAN,
        tier=Tier.DAYPASS,
        cadence=Cadence.ONE_TIME,
        prices={
            Region.DOMESTIC: Price(amount=500000, currency="NGN"),
            Region.INTERNATIONAL: Price(amount=499, currency="USD"),
        },
    ),
}

CURRENCY_SYMBOLS = {"NGN": "₦", "USD": "$"}
# Decimals shown for each currency; NGN is displayed in whole naira
CURRENCY_DISPLAY_DECIMALS = {"NGN": 0, "USD": 2}


def get_plan_definition(name: str) -> Optional[Plan]:
    return PLANS.get(name)


def get_plan(name: str, is_domestic: bool) -> Optional[PlanPrice]:
    """Resolve a plan to the caller's region. Unknown names return None."""
    plan = PLANS.get(name)
    if plan is None:
        return None
    region = Region.DOMESTIC if is_domestic else Region.INTERNATIONAL
    price = plan.prices[region]
    return PlanPrice(
        name=plan.name,
        tier=plan.tier,
        cadence=plan.cadence,
        region=region,
        amount=price.amount,
        currency=price.currency,
    )


def list_plans(is_domestic: bool) -> List[PlanPrice]:
    return [get_plan(name, is_domestic) for name in PLANS]


def format_price(amount: int, currency: str) -> str:
    """Render a minor-unit amount for display, e.g. 100000 NGN -> "₦1,000"."""
    symbol = CURRENCY_SYMBOLS.get(currency)
    if symbol is None:
        return f"{amount}"
    decimals = CURRENCY_DISPLAY_DECIMALS[currency]
    major = amount / 100
    return f"{symbol}{major:,.{decimals}f}"


def to_major_units(amount: int) -> str:
    """Minor units to a two-decimal string, as gateways that bill in major units expect."""
    return f"{amount // 100}.{amount % 100:02d}"

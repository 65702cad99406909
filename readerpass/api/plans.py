"""
Plan API routes.

- GET /api/plans: Plans priced for the caller's region
"""
from typing import List

from fastapi import APIRouter, Request
from pydantic import BaseModel

from readerpass.api.geo import caller_region
from readerpass.features.plans.catalog import format_price, list_plans


router = APIRouter(prefix="/api/plans", tags=["plans"])


class PlanOut(BaseModel):
    name: str
    tier: str
    cadence: str
    recurring: bool
    amount: int  # minor units
    currency: str
    display_price: str


class PlansResponse(BaseModel):
    region_code: str
    is_domestic: bool
    plans: List[PlanOut]


@router.get("", response_model=PlansResponse)
def get_plans(request: Request):
    region = caller_region(request)
    plans = [
        PlanOut(
            name=p.name,
            tier=p.tier.value,
            cadence=p.cadence.value,
            recurring=p.is_recurring,
            amount=p.amount,
            currency=p.currency,
            display_price=format_price(p.amount, p.currency),
        )
        for p in list_plans(region.is_domestic)
    ]
    return PlansResponse(region_code=region.region_code.value, is_domestic=region.is_domestic, plans=plans)

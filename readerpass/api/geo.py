"""
Geo API routes.

- GET /api/geo/detect: Pricing region for the caller
"""
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from readerpass.features.region import service as region_service
from readerpass.models.region import RegionResult


router = APIRouter(prefix="/api/geo", tags=["geo"])


class GeoResponse(BaseModel):
    region_code: str
    country_code: Optional[str]
    is_domestic: bool
    source: str


def caller_region(request: Request) -> RegionResult:
    """Resolve the region for the request origin (never raises)."""
    peer = request.client.host if request.client else None
    return region_service.resolve(request.headers, peer)


@router.get("/detect", response_model=GeoResponse)
def detect(request: Request):
    """
    Detect the caller's pricing region.

    Returns:
        {"region_code": "domestic"|"international", "country_code": "NG"|..., "is_domestic": bool, "source": ...}
    """
    result = caller_region(request)
    return GeoResponse(
        region_code=result.region_code.value,
        country_code=result.country_code,
        is_domestic=result.is_domestic,
        source=result.source,
    )

"""
Liveness and readiness checks.

/readyz fails only on storage problems. Missing gateway credentials are
reported but do not fail readiness: they surface as payment_unavailable on
the request that needs them.
"""

import logging
from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from readerpass.core.config import settings
from readerpass.core.database import get_engine, metadata
from readerpass.models.plan import Region

logger = logging.getLogger("readerpass")

root_router = APIRouter(tags=["health"])


def gateway_readiness() -> Dict[str, bool]:
    return {
        Region.DOMESTIC.value: bool(settings.PAYSTACK_SECRET_KEY),
        Region.INTERNATIONAL.value: bool(settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET),
    }


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Database reachable and every ledger table present."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        inspector = inspect(engine)
        missing = [name for name in sorted(metadata.tables) if not inspector.has_table(name)]
    except Exception as e:
        logger.error("health.readyz_failed", extra={"error_code": "database_unreachable", "status": 503})
        logger.debug(f"[readyz] {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("health.readyz_missing_tables", extra={"error_code": "missing_tables", "status": 503})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "gateways": gateway_readiness()}

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from readerpass/.env before settings are built
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from readerpass.core.config import settings, validate_config
from readerpass.core.database import create_all_tables
from readerpass.core.logging import configure_logging
from readerpass.core.middleware.request_id import RequestIdMiddleware
from readerpass.core.validation import validate_env
from readerpass.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from readerpass.api import content, geo, health, payments, plans, subscription
from readerpass.features.access.evaluator import InMemoryContentSource

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("readerpass")
    create_all_tables()
    logger.info(
        "Starting ReaderPass (env=%s, gateways=%s)",
        settings.ENV,
        health.gateway_readiness(),
    )
    try:
        yield
    finally:
        logger.info("Stopping ReaderPass")


app = FastAPI(title="ReaderPass - Entitlements & Payments", lifespan=lifespan)

# Deployments replace this with their content store adapter
app.state.content_source = InMemoryContentSource()

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_BASE_URL.rstrip("/")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(geo.router)
app.include_router(plans.router)
app.include_router(payments.router)
app.include_router(subscription.router)
app.include_router(content.router)
app.include_router(health.root_router)

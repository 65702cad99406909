import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Server (readerpass command)
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # App URLs (callback / return links are built from this)
    APP_BASE_URL: str = "http://localhost:8000"
    SUCCESS_PATH: str = "/comics"
    FAILURE_PATH: str = "/subscription"
    BRAND_NAME: str = "ReaderPass"

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_COOKIE_NAME: Optional[str] = "readerpass_token"  # JWT cookie for browser redirects

    # Domestic gateway (Paystack)
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"

    # International gateway (PayPal)
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_MODE: str = "sandbox"  # sandbox | live
    PAYPAL_PRODUCT_ID: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None

    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    ANONYMOUS_EMAIL_DOMAIN: str = "anonymous.readerpass.local"

    # Region resolution
    DOMESTIC_COUNTRY_CODE: str = "NG"
    REGION_DEFAULT: Optional[str] = None  # domestic | international; derived from ENV when unset
    DEV_COUNTRY_CODE: Optional[str] = None
    IPAPI_KEY: Optional[str] = None
    GEO_LOOKUP_TIMEOUT_SECONDS: float = 3.0
    GEO_CACHE_TTL_SECONDS: int = 3600

    # Anonymous day pass session cookie
    SESSION_COOKIE_NAME: str = "daypass_session_id"
    SESSION_COOKIE_MAX_AGE: int = 7 * 24 * 60 * 60

    # Entitlement windows
    DAYPASS_WINDOW_HOURS: int = 3
    MEMBER_CYCLE_DAYS: int = 7
    FREE_PREVIEW_LIMIT: int = 4

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def is_production(settings_obj: Optional[Settings] = None) -> bool:
    cfg = settings_obj or settings
    return (cfg.ENV or "").lower() == "production"


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate payment configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Gateway credentials stay optional here: a missing gateway is reported
    as "payment service unavailable" on first use, not at startup.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("readerpass")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "PAYSTACK_SECRET_KEY",
        "PAYPAL_CLIENT_ID",
        "PAYPAL_CLIENT_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True

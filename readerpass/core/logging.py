"""
Structured logging for payment and entitlement events.

- JSON lines in production, one readable line per event elsewhere.
- request_id comes from a context variable set by RequestIdMiddleware.
- Session tokens are masked before they reach a handler.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "readerpass"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes copied from `extra=` into the emitted line, in this order
_EVENT_FIELDS = (
    "event_type",
    "error_code",
    "user_id",
    "session_id",
    "provider",
    "reference",
    "plan_name",
    "status",
    "method",
    "path",
    "latency_bucket",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for ceiling, label in _LATENCY_BUCKETS:
        if latency_ms < ceiling:
            return label
    return ">=1000ms"


def mask_session_id(session_id: Optional[str]) -> Optional[str]:
    """Keep enough of an anonymous session token to correlate, never the whole secret."""
    if not session_id:
        return None
    return session_id[:8] + "..."


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _event_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = {}
    for name in _EVENT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            fields[name] = value
    return fields


class ContextFilter(logging.Filter):
    """Fill request_id from context when the caller did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_event_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in _event_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the readerpass logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if env.lower() == "development" else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; don't print its lines twice
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _truncate(value: Any, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    provider: Optional[str] = None,
    reference: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log one payment/entitlement event with its correlation fields."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "session_id": mask_session_id(session_id),
        "provider": provider,
        "reference": reference,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=fields)

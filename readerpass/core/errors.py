"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from readerpass.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConfigurationError(AppError):
    """Gateway credentials missing or rejected by the provider."""
    code = "payment_unavailable"
    status_code = 503


class ProviderRejected(AppError):
    """The gateway explicitly declined the payment. Terminal, never retried."""
    code = "payment_failed"
    status_code = 402


class ProviderUnreachable(AppError):
    """Timeout, transport error or provider 5xx. Safe to retry."""
    code = "provider_unreachable"
    status_code = 502


class IdentityMismatch(AppError):
    code = "unauthorized"
    status_code = 403


class AuthenticationRequired(AppError):
    code = "login_required"
    status_code = 401


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


# Framework HTTPExceptions reuse the codes the AppError classes already use
_HTTP_CODES = {
    401: AuthenticationRequired.code,
    403: IdentityMismatch.code,
    404: NotFoundError.code,
}


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_response(status: int, code: str, message: str, rid: str, **extra) -> JSONResponse:
    content = {
        "error": {"code": code, "message": message, "request_id": rid},
        "detail": message,
    }
    content.update(extra)
    return JSONResponse(status_code=status, content=content, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logging.getLogger("readerpass").log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logging.getLogger("readerpass").warning(
        "http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code}
    )
    return _error_response(exc.status_code, code, exc.detail or "HTTP error", rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
    return _error_response(400, ValidationError.code, "Invalid request", _extract_request_id(request), errors=errors)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logging.getLogger("readerpass").error(
        "unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"}
    )
    return _error_response(500, "internal_error", "Unexpected error", rid)

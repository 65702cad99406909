"""
Payment session tracker.

An anonymous buyer is identified by an opaque, unguessable token kept in an
HttpOnly cookie. The token is the only proof of day pass ownership until the
buyer logs in and the pass is merged into their account.
"""
import re
import secrets
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from readerpass.core.config import settings, is_production

# token_urlsafe(32) yields 43 chars; accept a little slack, reject anything else
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


def issue_session_id() -> str:
    return secrets.token_urlsafe(32)


def is_valid_session_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_TOKEN_PATTERN.match(value))


def read_session_id(request: Request) -> Optional[str]:
    """Session token from the request cookie; malformed values are treated as absent."""
    value = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not is_valid_session_id(value):
        return None
    return value


def attach(token: str, response: Response) -> Response:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=settings.SESSION_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=is_production(),
        samesite="lax",
    )
    return response

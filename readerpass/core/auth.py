"""
Auth utilities for the ReaderPass API.

Validates HS256 JWTs issued by the account service and extracts the caller.
Outside production, falls back to X-User-Id / X-User-Email headers (tests, local dev).
"""
from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import Header, HTTPException, Request
import jwt

from readerpass.core.config import settings, is_production

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: Optional[str] = None


def verify_jwt(token: str) -> CurrentUser:
    """
    Verify a Bearer JWT and extract the caller.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        CurrentUser built from the 'sub' and 'email' claims

    Raises:
        HTTPException 401: Invalid, expired or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.warning("Bearer token presented but AUTH_JWT_SECRET is not configured")
        raise HTTPException(status_code=401, detail="Token verification unavailable")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(user_id=str(user_id), email=payload.get("email"))


async def get_optional_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test caller id"),
    x_user_email: Optional[str] = Header(None, description="Dev/test caller email"),
) -> Optional[CurrentUser]:
    """
    Resolve the caller if one is authenticated, else None.

    Priority:
    1. JWT from Authorization header (an invalid token is a 401, not anonymous)
    2. JWT from the AUTH_COOKIE_NAME cookie (gateway redirects carry no headers)
    3. X-User-Id header, outside production only
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:])

    cookie_token = request.cookies.get(settings.AUTH_COOKIE_NAME) if settings.AUTH_COOKIE_NAME else None
    if cookie_token:
        return verify_jwt(cookie_token)

    if x_user_id and not is_production():
        return CurrentUser(user_id=x_user_id, email=x_user_email)

    return None


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test caller id"),
    x_user_email: Optional[str] = Header(None, description="Dev/test caller email"),
) -> CurrentUser:
    user = await get_optional_user(request, x_user_id=x_user_id, x_user_email=x_user_email)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Missing Authorization (Bearer JWT) or X-User-Id header",
        )
    return user

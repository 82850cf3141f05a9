"""
Auth utilities for the dashboard API.

Validates session JWTs issued by the frontend auth layer and extracts the
user from request context. Outside production, falls back to X-User-Id
headers so local tooling and tests can act as any user.
"""
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, Request

from backend.core.config import settings
from backend.core.errors import UnauthorizedError
from backend.core.logging import log_event


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


def verify_session_jwt(token: str) -> AuthenticatedUser:
    """
    Verify a session JWT and extract identity claims.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        AuthenticatedUser built from the 'sub', 'email' and 'name' claims

    Raises:
        UnauthorizedError: Invalid, expired or unverifiable token
    """
    if not settings.AUTH_SECRET:
        raise UnauthorizedError("Token verification is not configured")

    options = {"verify_signature": True, "verify_exp": True}
    kwargs = {}
    if settings.AUTH_ISSUER:
        kwargs["issuer"] = settings.AUTH_ISSUER

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_SECRET,
            algorithms=["HS256"],
            options=options,
            **kwargs,
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        log_event("debug", "auth.invalid_token", extra={"reason": str(e)})
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")

    return AuthenticatedUser(
        user_id=str(user_id),
        email=payload.get("email"),
        display_name=payload.get("name"),
    )


def _header_fallback_allowed() -> bool:
    return settings.ENV.lower() not in ("prod", "production")


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: act as this user"),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> AuthenticatedUser:
    """
    Resolve the signed-in user.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (non-production only)
    3. Raise 401 Unauthorized

    After successful auth, the user is upserted into app_users.
    """
    user: Optional[AuthenticatedUser] = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        # An invalid token never falls through to the header fallback
        user = verify_session_jwt(auth_header[7:])
    elif x_user_id and _header_fallback_allowed():
        user = AuthenticatedUser(user_id=x_user_id, email=x_user_email, display_name=x_user_name)

    if user is None:
        raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")

    from backend.features.users.service import get_or_create_user
    get_or_create_user(user.user_id, email=user.email, display_name=user.display_name)

    request.state.user_id = user.user_id
    return user

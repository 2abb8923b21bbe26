"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens are presented as "Authorization: Bearer <token>". The refresh
token travels separately (httpOnly cookie or X-Refresh-Token header) and is
never accepted here: the codec rejects it as the wrong kind.

get_current_user() raises 401 if unauthenticated.
require_admin() raises 403 if the user is not an admin.
require_verified_email() raises 403 if the user's email is unverified.

The user record is re-read on every request, so role changes and account
deletion take effect immediately even while an access token is still valid.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import ForbiddenError, UnauthorizedError
from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if not token:
        raise UnauthorizedError("Access token required")
    return get_auth_service(request).authenticate_access_token(token)


def require_admin(request: Request) -> User:
    user = get_current_user(request)
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user


def require_verified_email(request: Request) -> User:
    user = get_current_user(request)
    if not user.is_email_verified:
        raise ForbiddenError("Email verification required")
    return user

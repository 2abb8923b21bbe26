"""
auth/errors.py -- Typed failures raised by the auth workflow.

AuthError subclasses carry an HTTP status and a stable error code so the API
layer can map them onto the response envelope without inspecting messages.
Messages are deliberately generic where they could otherwise reveal whether
an account or token exists.

The token/mail exceptions below are internal signals. The workflow converts
them into AuthError subclasses before they reach a caller.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for workflow failures that map onto an HTTP response."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(AuthError):
    status_code = 400
    error_code = "bad_request"


class UnauthorizedError(AuthError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(AuthError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AuthError):
    status_code = 409
    error_code = "conflict"


# ---------------------------------------------------------------------------
# Internal signals
# ---------------------------------------------------------------------------


class InvalidTokenError(Exception):
    """A signed token failed verification.

    reason is one of "expired", "invalid", "wrong_kind". It exists for logging
    and control flow only and must never be echoed to a client.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"invalid token ({reason})")
        self.reason = reason


class InvalidOrExpiredTokenError(Exception):
    """A one-time token is unknown, already consumed, or past its expiry."""


class MailDeliveryError(Exception):
    """The mail transport failed to hand a message to the SMTP server."""

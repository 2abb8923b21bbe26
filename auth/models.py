"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; the API layer maps these onto Pydantic response models.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


class TokenKind(str, Enum):
    """Discriminator carried in every signed token ("typ" claim)."""

    access = "access"
    refresh = "refresh"
    email_verification = "email_verification"
    password_reset = "password_reset"


class OneTimePurpose(str, Enum):
    """Purpose of a single-use token. Each purpose has its own pair of columns."""

    email_verification = "email_verification"
    password_reset = "password_reset"


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    """Represents an identity in AuthX.

    hashed_password is None for OAuth-only accounts. Those accounts cannot
    log in with a password; has_local_password makes that explicit instead
    of relying on an unguessable random password.

    The *_token_hash fields hold HMAC digests of pending one-time tokens.
    The plaintext is only ever known to the recipient of the email.
    """

    email: str
    first_name: str
    last_name: str
    role: str = Role.user.value
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    is_email_verified: bool = False
    oauth_provider: str | None = None  # "github", "google", "oidc"
    oauth_id: str | None = None  # provider's stable user ID
    avatar: str | None = None
    email_verification_token_hash: str | None = None
    email_verification_expires: str | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def has_local_password(self) -> bool:
        return self.hashed_password is not None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin.value


@dataclass(frozen=True)
class TokenClaims:
    """Verified payload of a signed token."""

    subject_id: int
    role: str
    kind: TokenKind
    expires_at: int  # unix seconds


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-independent view of an OAuth identity.

    email is only ever populated with an address the provider has verified.
    """

    provider: str
    subject: str
    email: str | None
    display_name: str = ""
    avatar: str | None = None

    @property
    def first_name(self) -> str:
        parts = self.display_name.split()
        return parts[0] if parts else "User"

    @property
    def last_name(self) -> str:
        return " ".join(self.display_name.split()[1:])

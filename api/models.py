"""
API request and response models for AuthX REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

JSON keys are camelCase on the wire (alias_generator=to_camel); snake_case
names are also accepted on input (populate_by_name=True).

Input validation lives here so malformed requests are rejected before they
reach the auth workflow.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN = 8
PASSWORD_MAX = 128
# bcrypt refuses input longer than 72 bytes
PASSWORD_MAX_BYTES = 72
NAME_MIN = 2
NAME_MAX = 50

_PASSWORD_RULE = (
    "Password must contain at least one uppercase letter, one lowercase letter, one number, and one special character"
)
_AVATAR_PATTERN = re.compile(r"^https?://\S+$")


def _check_password_strength(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
    has_lower = any(c.islower() for c in value)
    has_upper = any(c.isupper() for c in value)
    has_digit = any(c.isdigit() for c in value)
    has_special = any(not c.isalnum() and not c.isspace() for c in value)
    if not (has_lower and has_upper and has_digit and has_special):
        raise ValueError(_PASSWORD_RULE)
    return value


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# Names and addresses are trimmed; passwords and tokens are taken verbatim.
Email = Annotated[EmailStr, BeforeValidator(_strip)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=NAME_MIN, max_length=NAME_MAX)]
AvatarUrl = Annotated[str, StringConstraints(strip_whitespace=True, max_length=2048)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models -- auth
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register."""

    email: Email
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    first_name: Name
    last_name: Name

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password_strength(value)


class LoginRequest(_CamelModel):
    email: Email
    # No strength check on login: the message would hint at the password policy
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class VerifyEmailRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(_CamelModel):
    email: Email


class ResetPasswordRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password_strength(value)


# ---------------------------------------------------------------------------
# Request models -- profile and admin
# ---------------------------------------------------------------------------


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Password confirmation does not match password")
        return self


class ProfileUpdate(_CamelModel):
    first_name: Optional[Name] = None
    last_name: Optional[Name] = None
    avatar: Optional[AvatarUrl] = None

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _AVATAR_PATTERN.match(value):
            raise ValueError("Avatar must be a valid URL")
        return value


class AdminUserUpdate(_CamelModel):
    role: Optional[RoleEnum] = None
    is_email_verified: Optional[bool] = None
    first_name: Optional[Name] = None
    last_name: Optional[Name] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    """Public view of a user. Never includes the password hash or token digests."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    is_email_verified: bool
    avatar: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=str(user.id),
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_email_verified=user.is_email_verified,
            avatar=user.avatar,
        )


class AdminUserOut(UserOut):
    """Admin view: adds account provenance and activity."""

    oauth_provider: Optional[str] = None
    has_local_password: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "AdminUserOut":
        return cls(
            **UserOut.from_user(user).model_dump(),
            oauth_provider=user.oauth_provider,
            has_local_password=user.has_local_password,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class TokensOut(_CamelModel):
    access_token: str
    refresh_token: str


class AuthData(_CamelModel):
    user: UserOut
    tokens: TokensOut


class Pagination(_CamelModel):
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total_items: int) -> "Pagination":
        total_pages = math.ceil(total_items / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total_items=total_items,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class UserListData(_CamelModel):
    users: list[AdminUserOut]
    pagination: Pagination


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class HealthData(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str]


class ApiResponse(BaseModel):
    """Envelope carried by every response, success or failure."""

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[Any] = None

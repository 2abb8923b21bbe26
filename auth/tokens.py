"""
auth/tokens.py -- Token codec and secret-digest helpers.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id), role, typ (the
       TokenKind discriminator), iat, exp and a random jti. verify() checks
       signature, expiry AND that typ matches the kind the caller expects, so
       a valid refresh token can never be replayed as an access token and a
       reset token can never verify an email.

  Two secrets: refresh tokens are signed with JWT_REFRESH_SECRET, every other
       kind with JWT_ACCESS_SECRET. Compromising one key does not let an
       attacker forge the other kind.

  jti: two tokens minted for the same user in the same second would otherwise
       be byte-identical. The random jti guarantees a rotated refresh token is
       a new string and gives the ledger a unique digest per issue.

  Digests: refresh tokens and one-time tokens are stored as
       HMAC-SHA256(SECRET_KEY, token). The inputs are high-entropy, so a
       deterministic keyed hash is enough and permits O(1) lookup. A leaked
       database row cannot be replayed without the plaintext.

Layer rule: no imports from api/ or core/. Settings are passed in by the
caller (see TokenCodec.from_settings).
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidTokenError
from auth.models import TokenClaims, TokenKind, TokenPair

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenLifetimes:
    access: timedelta = timedelta(minutes=15)
    refresh: timedelta = timedelta(days=7)
    email_verification: timedelta = timedelta(hours=24)
    password_reset: timedelta = timedelta(minutes=10)

    def for_kind(self, kind: TokenKind) -> timedelta:
        return getattr(self, kind.value)


class TokenCodec:
    """Mint and verify signed, expiring, kind-tagged tokens.

    Pure function of its inputs plus the secrets it was constructed with;
    holds no mutable state, so a single instance is shared across requests.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        lifetimes: TokenLifetimes | None = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.lifetimes = lifetimes or TokenLifetimes()

    @classmethod
    def from_settings(cls, settings) -> TokenCodec:
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            lifetimes=TokenLifetimes(
                access=timedelta(minutes=settings.access_token_expire_minutes),
                refresh=timedelta(days=settings.refresh_token_expire_days),
                email_verification=timedelta(hours=settings.email_verification_expire_hours),
                password_reset=timedelta(minutes=settings.password_reset_expire_minutes),
            ),
        )

    def _secret_for(self, kind: TokenKind) -> str:
        return self._refresh_secret if kind is TokenKind.refresh else self._access_secret

    def issue(self, subject_id: int, role: str, kind: TokenKind) -> str:
        """Encode a signed token for subject_id with the lifetime of its kind."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(subject_id),
            "role": role,
            "typ": kind.value,
            "iat": int(now.timestamp()),
            "exp": int((now + self.lifetimes.for_kind(kind)).timestamp()),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret_for(kind), algorithm=_ALGORITHM)

    def issue_pair(self, subject_id: int, role: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue(subject_id, role, TokenKind.access),
            refresh_token=self.issue(subject_id, role, TokenKind.refresh),
        )

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Decode token and check it is of expected_kind.

        Raises InvalidTokenError on any failure. The reason attribute is for
        logs only; callers must answer with one generic message.
        """
        try:
            payload = jwt.decode(token, self._secret_for(expected_kind), algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidTokenError("expired") from exc
        except JWTError as exc:
            raise InvalidTokenError("invalid") from exc

        if payload.get("typ") != expected_kind.value:
            raise InvalidTokenError("wrong_kind")
        try:
            subject_id = int(payload["sub"])
            role = str(payload["role"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("invalid") from exc
        return TokenClaims(subject_id=subject_id, role=role, kind=expected_kind, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Secret digests
# ---------------------------------------------------------------------------


def digest_secret(key: str, raw: str) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string."""
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


def generate_one_time_secret() -> str:
    """256 bits of entropy as 64 hex characters."""
    return secrets.token_hex(32)

"""
auth/one_time.py -- Single-use, expiring tokens for email verification and
password reset.

The plaintext is a 256-bit random value returned to the caller exactly once
(for delivery by email). Only HMAC-SHA256(SECRET_KEY, plaintext) and an
expiry timestamp are written to the user record, so a leaked database row
cannot be replayed. Issuing a new token for the same purpose overwrites the
pending one.

consume() clears the stored digest in the same conditional write that finds
it, which makes every token single-use even under concurrent requests.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import InvalidOrExpiredTokenError
from auth.models import OneTimePurpose, User
from auth.store import UserStore
from auth.tokens import digest_secret, generate_one_time_secret


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OneTimeTokenManager:
    def __init__(
        self,
        store: UserStore,
        digest_key: str,
        lifetimes: dict[OneTimePurpose, timedelta],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        missing = set(OneTimePurpose) - set(lifetimes)
        if missing:
            raise ValueError(f"No lifetime configured for: {sorted(p.value for p in missing)}")
        self._store = store
        self._digest_key = digest_key
        self._lifetimes = lifetimes
        self._clock = clock

    def issue(self, user: User, purpose: OneTimePurpose) -> str:
        """Generate a token for purpose, persist its digest, return the plaintext."""
        plaintext = generate_one_time_secret()
        expires_at = self._clock() + self._lifetimes[purpose]
        self._store.set_one_time_token(user.id, purpose, digest_secret(self._digest_key, plaintext), expires_at)
        return plaintext

    def consume(self, plaintext: str, purpose: OneTimePurpose) -> User:
        """Spend a token. Raises InvalidOrExpiredTokenError if unknown, used, or expired."""
        if not plaintext:
            raise InvalidOrExpiredTokenError()
        user = self._store.consume_one_time_token(
            purpose,
            digest_secret(self._digest_key, plaintext),
            now=self._clock(),
        )
        if user is None:
            raise InvalidOrExpiredTokenError()
        return user

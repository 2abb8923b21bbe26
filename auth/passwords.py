"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage has no compatibility shim.

Comparison is delegated to bcrypt.checkpw, which recomputes the hash with the
stored salt and work factor, so every call costs the same regardless of where
a mismatch occurs.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

DEFAULT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt raises ValueError for input longer than 72 bytes. The API layer
    rejects such passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class PasswordHasher:
    """Password hashing bound to a fixed work factor.

    dummy_hash is computed once so that verify_against_nothing() costs the
    same as a real check. Login always runs bcrypt, even for unknown emails
    and OAuth-only accounts, so response time does not reveal which accounts
    exist [C1].
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds
        self.dummy_hash = hash_password("authx_timing_dummy", rounds)

    def hash(self, plain: str) -> str:
        return hash_password(plain, self.rounds)

    def verify(self, plain: str, hashed: str | None) -> bool:
        if hashed is None:
            self.verify_against_nothing(plain)
            return False
        return verify_password(plain, hashed)

    def verify_against_nothing(self, plain: str) -> None:
        verify_password(plain, self.dummy_hash)

"""
auth/sessions.py -- Session ledger: the set of currently valid refresh tokens.

Invariant: a refresh token is single-use. rotate() removes the presented
token and records its replacement in one conditional store write, so a token
that was already rotated out, revoked, or never issued is rejected, and two
concurrent refreshes with the same token cannot both succeed.

Only HMAC digests of refresh tokens are stored (see auth/tokens.py).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.errors import UnauthorizedError
from auth.models import TokenPair, User
from auth.store import UserStore
from auth.tokens import TokenCodec, digest_secret

logger = logging.getLogger("authx.auth.sessions")

INVALID_REFRESH_TOKEN = "Invalid refresh token"


class SessionLedger:
    def __init__(self, store: UserStore, codec: TokenCodec, digest_key: str) -> None:
        self._store = store
        self._codec = codec
        self._digest_key = digest_key

    def _digest(self, token: str) -> str:
        return digest_secret(self._digest_key, token)

    def _refresh_expiry(self) -> datetime:
        return datetime.now(timezone.utc) + self._codec.lifetimes.refresh

    def issue_pair(self, user: User) -> TokenPair:
        """Mint an access/refresh pair and add the refresh token to the valid set."""
        pair = self._codec.issue_pair(user.id, user.role)
        self._store.add_refresh_token(user.id, self._digest(pair.refresh_token), self._refresh_expiry())
        return pair

    def rotate(self, user: User, presented_refresh_token: str) -> TokenPair:
        """Spend presented_refresh_token and return a fresh pair.

        Raises UnauthorizedError if the token is not in the user's valid set.
        The caller must already have verified the token's signature and kind.
        """
        pair = self._codec.issue_pair(user.id, user.role)
        swapped = self._store.swap_refresh_token(
            user.id,
            old_hash=self._digest(presented_refresh_token),
            new_hash=self._digest(pair.refresh_token),
            expires_at=self._refresh_expiry(),
        )
        if not swapped:
            logger.warning("Refresh token replay or revoked token presented for user_id=%s", user.id)
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)
        return pair

    def revoke_all(self, user: User) -> int:
        """Invalidate every outstanding refresh token for the user."""
        revoked = self._store.revoke_refresh_tokens(user.id)
        logger.info("Revoked %d session(s) for user_id=%s", revoked, user.id)
        return revoked

    def is_active(self, user: User, refresh_token: str) -> bool:
        """Test helper: whether refresh_token is still in the ledger. No request path calls it."""
        return self._store.has_refresh_token(user.id, self._digest(refresh_token))

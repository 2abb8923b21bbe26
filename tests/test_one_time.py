"""
tests/test_one_time.py -- Unit tests for single-use verification and reset tokens.

A controllable clock drives expiry so no test sleeps.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import InvalidOrExpiredTokenError
from auth.models import OneTimePurpose, User
from auth.one_time import OneTimeTokenManager
from auth.store import UserStore

LIFETIMES = {
    OneTimePurpose.email_verification: timedelta(hours=24),
    OneTimePurpose.password_reset: timedelta(minutes=10),
}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(store: UserStore, clock: FakeClock) -> OneTimeTokenManager:
    return OneTimeTokenManager(store, "k" * 64, LIFETIMES, clock=clock)


@pytest.fixture
def user(store: UserStore) -> User:
    uid = store.create_user(User(email="alice@example.com", first_name="Alice", last_name="Liddell"))
    return store.get_by_id(uid)


class TestOneTimeTokens:
    def test_consume_returns_owner(self, manager: OneTimeTokenManager, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.email_verification)
        assert manager.consume(token, OneTimePurpose.email_verification).id == user.id

    def test_single_use(self, manager: OneTimeTokenManager, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.password_reset)
        manager.consume(token, OneTimePurpose.password_reset)
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume(token, OneTimePurpose.password_reset)

    def test_expires_after_lifetime(self, manager: OneTimeTokenManager, clock: FakeClock, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.password_reset)
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume(token, OneTimePurpose.password_reset)

    def test_valid_just_before_expiry(self, manager: OneTimeTokenManager, clock: FakeClock, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.email_verification)
        clock.advance(hours=23, minutes=59)
        assert manager.consume(token, OneTimePurpose.email_verification).id == user.id

    def test_purpose_isolation(self, manager: OneTimeTokenManager, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.email_verification)
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume(token, OneTimePurpose.password_reset)

    def test_new_token_overwrites_pending_one(self, manager: OneTimeTokenManager, user: User) -> None:
        old = manager.issue(user, OneTimePurpose.password_reset)
        new = manager.issue(user, OneTimePurpose.password_reset)
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume(old, OneTimePurpose.password_reset)
        assert manager.consume(new, OneTimePurpose.password_reset).id == user.id

    def test_plaintext_never_stored(self, manager: OneTimeTokenManager, store: UserStore, user: User) -> None:
        token = manager.issue(user, OneTimePurpose.email_verification)
        stored = store.get_by_id(user.id).email_verification_token_hash
        assert stored is not None and stored != token

    @pytest.mark.parametrize("bogus", ["", "0" * 64, "not-a-token"])
    def test_unknown_token_rejected(self, manager: OneTimeTokenManager, user: User, bogus: str) -> None:
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume(bogus, OneTimePurpose.email_verification)

    def test_missing_lifetime_rejected(self, store: UserStore) -> None:
        with pytest.raises(ValueError):
            OneTimeTokenManager(store, "k" * 64, {OneTimePurpose.password_reset: timedelta(minutes=10)})


def test_concurrent_consume_succeeds_once(tmp_path) -> None:
    """Threads racing on one token on a file-backed database: exactly one wins."""
    threads = 8
    file_store = UserStore(f"sqlite:///{tmp_path / 'one_time.db'}")
    try:
        manager = OneTimeTokenManager(file_store, "k" * 64, LIFETIMES)
        uid = file_store.create_user(User(email="alice@example.com", first_name="Alice", last_name="Liddell"))
        user = file_store.get_by_id(uid)

        for _ in range(5):
            token = manager.issue(user, OneTimePurpose.password_reset)
            barrier = threading.Barrier(threads)

            def attempt():
                barrier.wait()
                try:
                    return manager.consume(token, OneTimePurpose.password_reset)
                except InvalidOrExpiredTokenError as exc:
                    return exc

            with ThreadPoolExecutor(max_workers=threads) as pool:
                outcomes = list(pool.map(lambda _: attempt(), range(threads)))

            assert sum(isinstance(o, User) for o in outcomes) == 1
            assert sum(isinstance(o, InvalidOrExpiredTokenError) for o in outcomes) == threads - 1
    finally:
        file_store.close()

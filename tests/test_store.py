"""
tests/test_store.py -- Unit tests for UserStore (SQLAlchemy Core repository).

Covers:
  - Case-insensitive email lookups and the UNIQUE constraint [M1]
  - Whitelisted updates; unknown fields fail fast
  - OAuth linking fills the avatar only when empty
  - Search and pagination
  - Refresh ledger: atomic swap succeeds once, revoke removes everything
  - One-time tokens: conditional consume, expiry, purpose isolation
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import OneTimePurpose, User
from auth.store import UserStore


def _user(email: str = "alice@example.com", **kwargs) -> User:
    return User(email=email, first_name=kwargs.pop("first_name", "Alice"), last_name="Liddell", **kwargs)


def _later(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)


class TestUsers:
    def test_create_and_fetch(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        user = store.get_by_id(uid)
        assert user is not None
        assert user.email == "alice@example.com"
        assert user.role == "user"
        assert user.is_email_verified is False
        assert user.created_at and user.updated_at

    def test_email_is_normalized(self, store: UserStore) -> None:
        uid = store.create_user(_user("  Alice@Example.COM "))
        assert store.get_by_email("ALICE@example.com").id == uid

    def test_duplicate_email_raises_integrity_error(self, store: UserStore) -> None:
        store.create_user(_user())
        with pytest.raises(IntegrityError):
            store.create_user(_user("ALICE@example.com"))

    def test_update_user_whitelist(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        assert store.update_user(uid, first_name="Alicia", is_email_verified=True)
        user = store.get_by_id(uid)
        assert user.first_name == "Alicia"
        assert user.is_email_verified is True
        with pytest.raises(ValueError):
            store.update_user(uid, email="other@example.com")

    def test_update_missing_user_returns_false(self, store: UserStore) -> None:
        assert store.update_user(9999, first_name="Nobody") is False

    def test_link_oauth_keeps_existing_avatar(self, store: UserStore) -> None:
        uid = store.create_user(_user(avatar="https://img.example.com/mine.png"))
        store.link_oauth(uid, "github", "1234", avatar="https://avatars.example.com/gh.png")
        user = store.get_by_oauth("github", "1234")
        assert user.id == uid
        assert user.avatar == "https://img.example.com/mine.png"

    def test_link_oauth_fills_missing_avatar(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.link_oauth(uid, "google", "g-1", avatar="https://avatars.example.com/g.png")
        assert store.get_by_id(uid).avatar == "https://avatars.example.com/g.png"

    def test_delete_user_removes_ledger(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.add_refresh_token(uid, "h" * 64, _later(days=1))
        assert store.delete_user(uid)
        assert store.get_by_id(uid) is None
        assert store.count_refresh_tokens(uid) == 0
        assert store.delete_user(uid) is False

    def test_search_and_paginate(self, store: UserStore) -> None:
        for i in range(5):
            store.create_user(_user(f"member{i}@example.com"))
        store.create_user(_user("zed@other.org", first_name="Zed"))
        assert store.count_users() == 6
        assert store.count_users("example.com") == 5
        assert [u.email for u in store.list_users(query="zed")] == ["zed@other.org"]
        page = store.list_users(offset=2, limit=2)
        assert [u.email for u in page] == ["member2@example.com", "member3@example.com"]

    def test_search_wildcards_match_literally(self, store: UserStore) -> None:
        store.create_user(_user("a_b@example.com"))
        store.create_user(_user("axb@example.com"))
        store.create_user(_user("pct@example.com", first_name="100%"))
        assert [u.email for u in store.list_users(query="a_b")] == ["a_b@example.com"]
        assert store.count_users("a_b") == 1
        assert [u.email for u in store.list_users(query="%")] == ["pct@example.com"]
        assert store.count_users("%") == 1

    def test_count_admins(self, store: UserStore) -> None:
        store.create_user(_user(role="admin"))
        store.create_user(_user("bob@example.com"))
        assert store.count_admins() == 1

    def test_ping(self, store: UserStore) -> None:
        assert store.ping() is True


class TestRefreshLedger:
    def test_swap_is_single_use(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.add_refresh_token(uid, "old", _later(days=1))
        assert store.swap_refresh_token(uid, "old", "new", _later(days=1)) is True
        assert store.swap_refresh_token(uid, "old", "newer", _later(days=1)) is False
        assert store.has_refresh_token(uid, "new")
        assert not store.has_refresh_token(uid, "newer")
        assert store.count_refresh_tokens(uid) == 1

    def test_swap_checks_owner(self, store: UserStore) -> None:
        alice = store.create_user(_user())
        bob = store.create_user(_user("bob@example.com"))
        store.add_refresh_token(alice, "alice-token", _later(days=1))
        assert store.swap_refresh_token(bob, "alice-token", "stolen", _later(days=1)) is False
        assert store.has_refresh_token(alice, "alice-token")

    def test_revoke_removes_every_token(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        for i in range(3):
            store.add_refresh_token(uid, f"t{i}", _later(days=1))
        assert store.revoke_refresh_tokens(uid) == 3
        assert store.count_refresh_tokens(uid) == 0

    def test_add_prunes_expired_rows(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.add_refresh_token(uid, "stale", _later(seconds=-5))
        store.add_refresh_token(uid, "fresh", _later(days=1))
        assert not store.has_refresh_token(uid, "stale")
        assert store.count_refresh_tokens(uid) == 1


class TestOneTimeTokens:
    def test_consume_once(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        now = datetime.now(timezone.utc)
        store.set_one_time_token(uid, OneTimePurpose.password_reset, "digest", now + timedelta(minutes=10))
        user = store.consume_one_time_token(OneTimePurpose.password_reset, "digest", now)
        assert user is not None and user.id == uid
        assert store.consume_one_time_token(OneTimePurpose.password_reset, "digest", now) is None
        assert store.get_by_id(uid).password_reset_token_hash is None

    def test_expired_token_not_consumed(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        now = datetime.now(timezone.utc)
        store.set_one_time_token(uid, OneTimePurpose.email_verification, "digest", now + timedelta(minutes=1))
        assert store.consume_one_time_token(OneTimePurpose.email_verification, "digest", now + timedelta(minutes=2)) is None

    def test_purposes_are_isolated(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        now = datetime.now(timezone.utc)
        store.set_one_time_token(uid, OneTimePurpose.email_verification, "digest", now + timedelta(hours=1))
        assert store.consume_one_time_token(OneTimePurpose.password_reset, "digest", now) is None
        assert store.consume_one_time_token(OneTimePurpose.email_verification, "digest", now).id == uid

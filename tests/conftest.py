"""
tests/conftest.py -- Shared test fixtures for AuthX.

This module provides:
  - RecordingMailer: a Mailer whose transport records messages instead of
    sending them, with a switch to simulate SMTP failure
  - store / mailer / service: a fresh in-memory stack per test for unit tests
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - api_client: TestClient plus recording mailer and an admin access token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import: DEBUG lets
get_settings() auto-generate secrets, BCRYPT_ROUNDS keeps hashing fast, and
RATE_LIMIT_ENABLED=false keeps per-IP limits from tripping across tests.
"""

from __future__ import annotations

import itertools
import os
import re
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.errors import MailDeliveryError
from auth.mailer import Mailer
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

STRONG_PASSWORD = "Str0ng!Passw0rd"
ADMIN_PASSWORD = "Adm1n!Passw0rd"

_TOKEN_RE = {
    "verify": re.compile(r"/verify-email\?token=([0-9a-f]+)"),
    "reset": re.compile(r"/reset-password\?token=([0-9a-f]+)"),
}

_email_counter = itertools.count(1)


# ---------------------------------------------------------------------------
# Recording mail transport
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    to: str
    subject: str
    text_body: str


class RecordingMailer(Mailer):
    """Mailer that keeps every message in memory.

    Set fail=True to make every send raise MailDeliveryError, as a refused
    SMTP connection would.
    """

    def __init__(self) -> None:
        super().__init__(base_url="http://testserver", app_name="AuthX")
        self.sent: list[SentMail] = []
        self.fail = False

    @property
    def is_configured(self) -> bool:
        return True

    def send(self, to: str, subject: str, text_body: str, html_body: str) -> None:
        if self.fail:
            raise MailDeliveryError("simulated SMTP outage")
        self.sent.append(SentMail(to=to, subject=subject, text_body=text_body))

    def messages_to(self, to: str) -> list[SentMail]:
        return [m for m in self.sent if m.to == to]

    def last_token(self, to: str, kind: str) -> str | None:
        """Return the newest 'verify' or 'reset' token mailed to an address."""
        for message in reversed(self.messages_to(to)):
            match = _TOKEN_RE[kind].search(message.text_body)
            if match:
                return match.group(1)
        return None


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_db_url(suffix: str) -> str:
    return f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and recording mailer into app.state so routes see
    isolated collaborators. The OAuth registry is a MagicMock so no test can
    reach a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.mailer = mailer
        app.state.auth_service = AuthService.from_settings(get_settings(), store, mailer=mailer)
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-test fixtures -- fresh stack per test
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = UserStore(_memory_db_url(uuid.uuid4().hex))
    yield user_store
    user_store.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def service(store: UserStore, mailer: RecordingMailer) -> AuthService:
    return AuthService.from_settings(get_settings(), store, mailer=mailer)


@pytest.fixture
def make_email() -> Callable[[str], str]:
    """Return a factory for addresses that are unique across the session."""

    def _make(prefix: str = "user") -> str:
        return f"{prefix}{next(_email_counter)}@example.com"

    return _make


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, RecordingMailer, str], None, None]:
    """Yield (client, mailer, admin_token) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    An admin account is created before the client starts and signed in.
    """
    user_store = UserStore(_memory_db_url(uuid.uuid4().hex))
    recording = RecordingMailer()

    admin_service = AuthService.from_settings(get_settings(), user_store, mailer=recording)
    admin, _ = admin_service.ensure_admin("admin@example.com", ADMIN_PASSWORD, "Ada", "Admin")
    admin_token = admin_service.ledger.issue_pair(admin).access_token

    app.router.lifespan_context = _patch_lifespan(user_store, recording)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, recording, admin_token

    user_store.close()


@pytest.fixture
def register(api_client, make_email) -> Callable[..., dict]:
    """Register a fresh account through the API and return the response data.

    The returned dict is the envelope's data ({user, tokens}) plus the
    plaintext password under "password".
    """
    client, _, _ = api_client

    def _register(email: str | None = None, password: str = STRONG_PASSWORD, **names) -> dict:
        body = {
            "email": email or make_email(),
            "password": password,
            "firstName": names.get("first_name", "Alice"),
            "lastName": names.get("last_name", "Liddell"),
        }
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        data = resp.json()["data"]
        data["password"] = password
        return data

    return _register


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    return bearer

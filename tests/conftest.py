"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - FakeEmailSender / FailingEmailSender / ResetConnectionEmailSender:
    recording and broken mail transports
  - stores: isolated in-memory UserStore, VerificationTokenStore and AuditLog
  - service: an AuthService wired to those stores and the fake sender
  - client: TestClient over the real app with a patched lifespan
  - register / login helpers that drive the HTTP API

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the three stores
open separate engines. Plain :memory: DBs are per-connection and would present
a blank schema to each of them. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process; a fresh name per test keeps
tests isolated.

The environment must be set before any auth/core import:
  DEBUG=true               -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4          -- keeps hashing fast (only allowed with DEBUG)
  RATE_LIMIT_ENABLED=false -- tests log in far more often than the limits allow

Refresh cookies are issued with Secure, so the HTTP test client never sends
them back. Tests read the token from Set-Cookie and pass it in the JSON body.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.audit import AuditLog
from auth.errors import EmailDeliveryError
from auth.service import AuthService, RequestContext
from auth.store import UserStore
from auth.verification import VerificationTokenStore
from core.config import get_settings

STRONG_PASSWORD = "Abcd123!"

_TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")


# ---------------------------------------------------------------------------
# Email fakes
# ---------------------------------------------------------------------------


class FakeEmailSender:
    """Records every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str:
        self.sent.append({"recipient": recipient, "subject": subject, "text": text, "html": html_body})
        return f"fake-{len(self.sent)}"

    def last_token(self, subject: str | None = None) -> str:
        """Return the token embedded in the newest message (optionally filtered by subject)."""
        messages = [m for m in self.sent if subject is None or m["subject"] == subject]
        assert messages, "no matching email was sent"
        match = _TOKEN_IN_LINK.search(messages[-1]["text"])
        assert match, "email carries no token link"
        return match.group(1)


class FailingEmailSender:
    """Every send fails the way a dead SMTP relay would."""

    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str:
        raise EmailDeliveryError("relay unavailable")


class ResetConnectionEmailSender:
    """Every send fails with a raw socket error instead of EmailDeliveryError."""

    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str:
        raise ConnectionError("relay reset")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _test_db_url() -> str:
    return f"sqlite:///file:test_gatekeeper_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores() -> tuple[UserStore, VerificationTokenStore, AuditLog]:
    """Create the three stores over one fresh named shared-memory database."""
    db_url = _test_db_url()
    return UserStore(db_url), VerificationTokenStore(db_url), AuditLog(db_url)


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test AuthService and its stores into app.state so TestClient
    routes see isolated test DBs rather than the configured database.

    The sweep_task is a long-sleeping coroutine; a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = service.users
        app.state.verification_store = service.tokens
        app.state.audit_log = service.audit
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, VerificationTokenStore, AuditLog], None, None]:
    user_store, verification_store, audit_log = _make_test_stores()
    yield user_store, verification_store, audit_log
    user_store.close()
    verification_store.close()
    audit_log.close()


@pytest.fixture
def user_store(stores) -> UserStore:
    return stores[0]


@pytest.fixture
def verification_store(stores) -> VerificationTokenStore:
    return stores[1]


@pytest.fixture
def audit_log(stores) -> AuditLog:
    return stores[2]


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def service(stores, email_sender) -> AuthService:
    user_store, verification_store, audit_log = stores
    return AuthService(user_store, verification_store, audit_log, email_sender, get_settings())


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip="203.0.113.7", user_agent="pytest-agent/1.0")


@pytest.fixture
def client(service) -> Generator[TestClient, None, None]:
    """TestClient over the real app, backed by the per-test AuthService."""
    app.router.lifespan_context = _patch_lifespan(service)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def refresh_cookie(resp) -> str | None:
    """Extract the refresh_token value from a response's Set-Cookie headers."""
    for header in resp.headers.get_list("set-cookie"):
        name, _, rest = header.partition("=")
        if name.strip() == "refresh_token":
            value = rest.split(";", 1)[0].strip().strip('"')
            return value or None
    return None


def bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def register(client) -> Callable[..., dict]:
    """Register through the API and return {"resp", "access_token", "refresh_token", "user"}."""

    def _register(
        username: str = "alice",
        email: str = "a@x.com",
        password: str = STRONG_PASSWORD,
        **extra,
    ) -> dict:
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": username, "email": email, "password": password, **extra},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        return {
            "resp": resp,
            "user": data["user"],
            "access_token": data["access_token"],
            "refresh_token": refresh_cookie(resp),
        }

    return _register


@pytest.fixture
def login(client) -> Callable[..., dict]:
    """Log in through the API and return {"resp", "access_token", "refresh_token"}.

    Does not assert on status so failure paths can use it too.
    """

    def _login(email: str = "a@x.com", password: str = STRONG_PASSWORD, user_agent: str = "pytest") -> dict:
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password},
            headers={"User-Agent": user_agent},
        )
        body = resp.json()
        return {
            "resp": resp,
            "access_token": body.get("access_token"),
            "refresh_token": refresh_cookie(resp),
        }

    return _login

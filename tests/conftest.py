"""
tests/conftest.py -- Shared test fixtures for the storefront auth tests.

This module provides:
  - FakeClock: a settable UTC clock shared by store, tokens, lockout, service
  - RecordingMailer: captures action tokens instead of sending mail
  - store / service fixtures: isolated in-memory DB per test
  - client fixture: TestClient over the real app with a patched lifespan
  - csrf fixture: echo the current XSRF-TOKEN cookie as X-CSRF-Token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread.

Environment variables must be set before any auth/core import:
  DEBUG=true            -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4       -- keeps hashing fast
  SECURE_COOKIES=false  -- TestClient talks plain http; Secure cookies would not be sent back
  ALLOWED_HOSTS         -- TestClient's Host header is "testserver"
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from api.limiter import limiter
from api.main import app
from auth.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME
from auth.models import ActionKind
from auth.ratelimit import RateLimiter
from auth.service import AuthService
from auth.store import UserStore

API = "/api/v1"

STRONG_PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, ActionKind]] = []

    def send_mail(self, address: str, token: str, kind: ActionKind) -> None:
        self.sent.append((address, token, kind))

    def tokens_for(self, address: str, kind: ActionKind) -> list[str]:
        return [t for a, t, k in self.sent if a == address and k == kind]

    def last_token(self, address: str, kind: ActionKind) -> str:
        tokens = self.tokens_for(address, kind)
        assert tokens, f"no {kind.value} token was mailed to {address}"
        return tokens[-1]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[UserStore, None, None]:
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    s = UserStore(db_url=url, clock=clock)
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def service(store: UserStore, mailer: RecordingMailer, clock: FakeClock) -> AuthService:
    return AuthService(store, mailer=mailer, clock=clock)


@pytest.fixture
def alice(store: UserStore):
    """An existing account: alice@example.com / Str0ng!Pass."""
    return store.create("Alice", "alice@example.com", STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the per-test store and service into app.state, with a fresh
    in-memory rate limiter so windows never leak between tests.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.auth_service = service
        app.state.rate_limiter = RateLimiter(storage=MemoryStorage())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def client(store: UserStore, service: AuthService) -> Generator[TestClient, None, None]:
    """TestClient over the real app, primed with an XSRF-TOKEN cookie."""
    app.router.lifespan_context = _patch_lifespan(store, service)
    limiter.reset()
    with TestClient(app, raise_server_exceptions=True) as c:
        c.get(f"{API}/health")
        yield c


@pytest.fixture
def csrf(client: TestClient):
    """Return a helper echoing the current XSRF-TOKEN cookie as X-CSRF-Token.

    The cookie is rotated on every response, so call it per request:
        client.post(url, json=body, headers=csrf())
    """

    def headers(**extra: str) -> dict[str, str]:
        result = {CSRF_HEADER_NAME: client.cookies.get(CSRF_COOKIE_NAME)}
        result.update(extra)
        return result

    return headers

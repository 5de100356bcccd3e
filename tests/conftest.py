"""
tests/conftest.py -- Shared test fixtures for the panel auth core.

This module provides:
  - FakeClock / clock: a settable UTC clock injected into every component,
    so lockout windows and token/session expiry are tested without sleeping
  - FakeVerifier: a two-factor verifier that accepts exactly one code
  - store / cache / service: isolated in-memory backends per test
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: API tests use a named shared-memory SQLite URI (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
databases are per-connection and would present a blank schema to each
worker thread.

DEBUG must be set before any core/auth import so get_settings() can
auto-generate SECRET_KEY instead of raising ValueError. LOGIN_RATE_LIMIT is
raised so the login throttle never trips across a test module.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/auth import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AuthStore
from cache.store import SessionCache
from core.config import Settings

STRONG_PASSWORD = "Str0ng!Passw0rd"
VALID_TOTP = "123456"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)

    def timestamp(self) -> float:
        return self.current.timestamp()


class FakeVerifier:
    """Accepts VALID_TOTP for any secret; records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def verify(self, secret: str, code: str) -> bool:
        self.calls.append((secret, code))
        return code == VALID_TOTP


# bcrypt's minimum cost keeps the suite fast; the algorithm is unchanged.
_FAST_HASHER = PasswordHasher(rounds=4)


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": "test-secret-key-" + "x" * 32}
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh backends per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def cache(clock: FakeClock) -> Generator[SessionCache, None, None]:
    c = SessionCache(":memory:", clock=clock.timestamp)
    yield c
    c.close()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def service(settings, store, cache, verifier, clock) -> AuthService:
    return AuthService.build(settings, store, cache, verifier=verifier, hasher=_FAST_HASHER, clock=clock)


@pytest.fixture
def alice(service: AuthService):
    """A registered user with the default role."""
    return service.register("alice", "alice@x.com", STRONG_PASSWORD, "Alice", "Liddell")


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(auth: AuthService, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can .cancel() a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.auth = auth
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, auth_service) backed by an isolated shared-memory store.

    The DB name includes the test module name so modules never share state.
    """
    suffix = request.module.__name__.replace(".", "_")
    settings = make_settings()
    store = AuthStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    cache = SessionCache(":memory:")
    auth = AuthService.build(settings, store, cache, verifier=FakeVerifier(), hasher=_FAST_HASHER)

    app.router.lifespan_context = _patch_lifespan(auth, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, auth

    auth.close()

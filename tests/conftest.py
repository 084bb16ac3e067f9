"""
tests/conftest.py -- Shared test fixtures for the Bazaar auth tests.

This module provides:
  - FakeClock / clock: a controllable UTC clock so window and expiry tests
    never sleep
  - store / service: in-memory CredentialStore and a SessionService wired to
    the fake clock, for unit tests
  - api_client: TestClient over the real FastAPI app with a patched lifespan
    and an isolated shared-memory store

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
api_client because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-test fixtures stay on one thread and use plain :memory:.

Environment variables must be set before any api/auth/core import so
get_settings() sees them: DEBUG auto-generates SECRET_KEY, the bcrypt cost is
dropped to the minimum, and the per-IP HTTP throttle is raised out of the way.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RENEWAL_HASH_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import SessionService
from auth.store import CredentialStore
from core.config import get_settings

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed UTC instant until advance() moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def service(store: CredentialStore, clock: FakeClock) -> SessionService:
    return SessionService.from_settings(store, get_settings(), clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, service: SessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and service into app.state so TestClient routes see
    an isolated database instead of the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = store
        app.state.session_service = service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, CredentialStore], None, None]:
    """Yield (client, store) for API integration tests.

    One isolated database per test module; the service uses the real clock.
    """
    db_name = f"test_auth_{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}"
    test_store = CredentialStore(db_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    test_service = SessionService.from_settings(test_store, get_settings())

    app.router.lifespan_context = _patch_lifespan(test_store, test_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, test_store

    test_store.close()


def login(client: TestClient, email: str, **kwargs):
    """POST /api/v1/auth/login and return the response."""
    return client.post("/api/v1/auth/login", json={"email": email}, **kwargs)


def refresh_cookie_value(resp) -> str:
    """Pull the refresh_token value out of a login response's Set-Cookie header."""
    for key, value in resp.headers.multi_items():
        if key.lower() == "set-cookie" and value.startswith("refresh_token="):
            return value.split(";", 1)[0].split("=", 1)[1]
    raise AssertionError(f"No refresh_token cookie in response headers: {resp.headers}")

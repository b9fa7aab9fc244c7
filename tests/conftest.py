"""
tests/conftest.py -- Shared test fixtures for SessionVault.

This module provides:
  - FakeClock: controllable clock injected into SessionManager
  - store / state_cache / manager: isolated per-test repository and manager
  - _patch_lifespan(): wires test resources into app.state, bypassing real startup
  - api_client: TestClient plus an admin access token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment must be prepared before any auth/core import:
  DEBUG=true               get_settings() auto-generates both signing keys
  BCRYPT_ROUNDS=4          keeps hashing fast
  RATE_LIMIT_ENABLED=false login/register limits would trip across tests
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import issue_access_token
from cache.store import ConnectionStateCache
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPass1!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str, state_cache: ConnectionStateCache | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url, state_cache=state_cache)


def _patch_lifespan(user_store: UserStore, state_cache: ConnectionStateCache, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; the shutdown path calls .cancel() on it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.state_cache = state_cache
        app.state.user_store = user_store
        app.state.session_manager = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_cache() -> Generator[ConnectionStateCache, None, None]:
    cache = ConnectionStateCache(db_path=":memory:", ttl=300)
    yield cache
    cache.close()


@pytest.fixture
def store(state_cache: ConnectionStateCache) -> Generator[UserStore, None, None]:
    user_store = _make_test_store(uuid.uuid4().hex, state_cache=state_cache)
    yield user_store
    user_store.close()


@pytest.fixture
def manager(store: UserStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, get_settings(), clock=clock)


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The admin is registered through SessionManager before the client starts.
    """
    cache = ConnectionStateCache(db_path=":memory:", ttl=300)
    user_store = _make_test_store(f"api_{uuid.uuid4().hex}", state_cache=cache)
    manager = SessionManager(user_store, get_settings())

    admin = manager.register(ADMIN_EMAIL, ADMIN_PASSWORD, "Ada", "Admin", role=Role.admin.value).user
    token = issue_access_token(admin.id, admin.email, admin.role)

    app.router.lifespan_context = _patch_lifespan(user_store, cache, manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    user_store.close()
    cache.close()

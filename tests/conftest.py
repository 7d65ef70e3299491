"""
tests/conftest.py -- Shared test fixtures for the storefront auth tests.

This module provides:
  - make_store(): an isolated in-memory AccountStore, seeded with the catalog
  - RecordingDelivery: captures reset tokens / OTP codes instead of sending them
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient plus helpers for creating accounts and logging in
  - gate_client: TestClient with follow_redirects=False for route-gate tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() generates a
SECRET_KEY in dev mode instead of raising. ALLOWED_HOSTS must include
TestClient's "testserver" host or TrustedHostMiddleware answers 400.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
# bcrypt at the production cost would make every OTP issue slow; behaviour is
# the same with plaintext storage, and code_matches() covers both paths.
os.environ.setdefault("OTP_HASH_CODES", "false")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.models import Account, Group, TokenPurpose
from auth.permissions import seed_defaults
from auth.store import AccountStore
from auth.tokens import hash_password

_db_counter = itertools.count()

# One bcrypt hash shared by every fixture account keeps the suite fast.
DEFAULT_PASSWORD = "correct-horse-1"
_DEFAULT_HASH = hash_password(DEFAULT_PASSWORD)


def make_store(name: str = "") -> AccountStore:
    """Create a fresh named shared-memory store with catalog + default roles."""
    suffix = f"{name}_{next(_db_counter)}"
    store = AccountStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    seed_defaults(store)
    return store


def add_account(
    store: AccountStore,
    email: str,
    roles: list[str] | None = None,
    groups: list[int] | None = None,
    permissions: list[str] | None = None,
    **flags,
) -> Account:
    account_id = store.create_account(
        Account(
            email=email,
            name=email.split("@")[0],
            hashed_password=_DEFAULT_HASH,
            role_keys=roles or [],
            group_ids=groups or [],
            permissions=permissions or [],
            **flags,
        )
    )
    return store.get_by_id(account_id)


def add_group(store: AccountStore, name: str, permissions: list[str]) -> int:
    return store.create_group(Group(name=name, permissions=permissions))


@dataclass
class RecordingDelivery:
    """TokenDelivery that keeps the last secret per email for assertions."""

    reset_tokens: dict[str, str] = field(default_factory=dict)
    codes: dict[tuple[str, TokenPurpose], str] = field(default_factory=dict)

    def send_reset_token(self, email: str, token: str) -> None:
        self.reset_tokens[email] = token

    def send_otp(self, email: str, code: str, purpose: TokenPurpose) -> None:
        self.codes[(email, purpose)] = code


def _patch_lifespan(store: AccountStore, delivery: RecordingDelivery):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; a mock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, delivery)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: AccountStore
    delivery: RecordingDelivery

    def login(self, email: str, password: str = DEFAULT_PASSWORD):
        """POST /auth/login. The client's cookie jar keeps the session cookie."""
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    def logout(self) -> None:
        self.client.post("/api/v1/auth/logout")
        self.client.cookies.clear()

    def as_account(self, email: str, password: str = DEFAULT_PASSWORD) -> None:
        """Replace the client's cookies with a fresh session for email."""
        self.client.cookies.clear()
        resp = self.login(email, password)
        assert resp.status_code == 200, resp.text


@pytest.fixture(autouse=True, scope="session")
def _disable_rate_limits() -> Generator[None, None, None]:
    # TestRateLimit in test_auth_routes.py re-enables it through its own fixture.
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Per-test TestClient over an isolated store with a recording delivery."""
    s = make_store("api")
    delivery = RecordingDelivery()
    app.router.lifespan_context = _patch_lifespan(s, delivery)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=s, delivery=delivery)
    s.close()


@pytest.fixture(scope="module")
def gate_client() -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) for route-gate tests.

    follow_redirects=False is essential: the assertions are on redirect
    Location headers, which disappear once the client follows them.
    """
    s = make_store("gate")
    app.router.lifespan_context = _patch_lifespan(s, RecordingDelivery())
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, s
    s.close()

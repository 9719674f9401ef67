"""
tests/conftest.py -- Shared test fixtures for staffdesk.

This module provides:
  - FakeClock / clock: a controllable "now" shared by the token service and
    the auth flows, so lockout windows and token expiry are testable without
    sleeping
  - db_url / user_store / refresh_token_store: isolated in-memory SQLite stores
  - hasher, token_service, auth_service: the auth stack wired like production
  - make_user: factory that persists an ACTIVE user with a known password
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any api/ or core/ import so get_settings()
auto-generates SECRET_KEY in dev mode, uses the cheapest bcrypt cost, accepts
the TestClient Host header and does not rate-limit the test run.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from auth.flows import AuthService
from auth.models import LockoutPolicy, User, UserStatus
from auth.passwords import PasswordHasher
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import TokenConfig, TokenService

TEST_SECRET = "test-secret-key-with-at-least-32-characters"
ACCESS_TTL = timedelta(minutes=15)
REFRESH_TTL = timedelta(days=7)
DEFAULT_PASSWORD = "CorrectHorse1!"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed, manually advanced UTC datetime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def _memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def db_url() -> str:
    return _memory_db_url("test_auth")


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url)
    yield store
    store.close()


@pytest.fixture
def refresh_token_store(db_url: str) -> Generator[RefreshTokenStore, None, None]:
    store = RefreshTokenStore(db_url)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Auth stack
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(secret=TEST_SECRET, access_ttl=ACCESS_TTL, refresh_ttl=REFRESH_TTL)


@pytest.fixture
def token_service(token_config: TokenConfig, clock: FakeClock) -> TokenService:
    return TokenService(token_config, clock=clock)


@pytest.fixture
def auth_service(
    user_store: UserStore,
    refresh_token_store: RefreshTokenStore,
    hasher: PasswordHasher,
    token_service: TokenService,
    clock: FakeClock,
) -> AuthService:
    return AuthService(
        users=user_store,
        refresh_tokens=refresh_token_store,
        hasher=hasher,
        tokens=token_service,
        policy=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
        session_lifetime=timedelta(days=7),
        clock=clock,
        max_retries=3,
    )


@pytest.fixture
def make_user(user_store: UserStore, hasher: PasswordHasher) -> Callable[..., User]:
    """Return a factory persisting a user with DEFAULT_PASSWORD (or the given one)."""

    def _make(
        username: str = "alice",
        password: str = DEFAULT_PASSWORD,
        status: UserStatus = UserStatus.ACTIVE,
        **fields,
    ) -> User:
        password_hash, salt = hasher.hash_password(password)
        user = User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            password_hash=password_hash,
            salt=salt,
            first_name=fields.pop("first_name", username.capitalize()),
            last_name=fields.pop("last_name", "Tester"),
            status=status,
            **fields,
        )
        user_store.create_user(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, refresh_token_store: RefreshTokenStore, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and services into app.state so TestClient
    routes see isolated test DBs. The cleanup_task is a long-sleeping
    coroutine (a real asyncio.Task is required; MagicMock would fail on
    .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.refresh_token_store = refresh_token_store
        app.state.auth_service = auth_service
        app.state.token_service = auth_service.token_service
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(
    user_store: UserStore,
    refresh_token_store: RefreshTokenStore,
    hasher: PasswordHasher,
) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, auth_service) over the real app with isolated stores.

    The service runs on the real clock: tokens issued through HTTP are
    validated by the same service, and cookie max-age is computed from
    wall-clock time.
    """
    from api.main import app

    service = AuthService(
        users=user_store,
        refresh_tokens=refresh_token_store,
        hasher=hasher,
        tokens=TokenService(TokenConfig(secret=TEST_SECRET, access_ttl=ACCESS_TTL, refresh_ttl=REFRESH_TTL)),
        policy=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
    )
    app.router.lifespan_context = _patch_lifespan(user_store, refresh_token_store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service

"""
tests/conftest.py -- Shared test fixtures for authcore.

This module provides:
  - FakeClock: a settable Clock so expiry tests never sleep
  - RecordingNotifier / InlineDispatcher: capture outbound emails synchronously
  - store / clock / cache / service: unit-level fixtures on a temp-file DB
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient with an admin access token for route tests

Design: every store is a temp-file SQLite database (WAL mode, as in
production). TestClient runs sync route handlers in a thread pool and the
concurrency tests hit the store from many threads, so a per-connection
:memory: database would present a blank schema to each worker.

DEBUG, SECRET_KEY and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is cached on first call, and auth.tokens hashes its timing
dummy at import time with the configured cost.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from concurrent.futures import Future
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import RateLimiter
from api.main import app
from auth.models import Account
from auth.refresh import RefreshTokenRotator
from auth.session import SessionService
from auth.store import AccountStore
from auth.tokens import TokenIssuer, hash_password
from auth.verification import PasswordResetManager, VerificationTokenManager
from cache.store import AuthCache, MemoryCacheBackend
from core.clock import utc_now

SECRET = os.environ["SECRET_KEY"]
PASSWORD = "Str0ng!Pass"
EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingNotifier:
    """Stands in for EmailNotifier; keeps every (kind, email, token) sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_verification(self, to_email: str, token: str) -> None:
        self.sent.append(("verification", to_email, token))

    def send_password_reset(self, to_email: str, token: str) -> None:
        self.sent.append(("password_reset", to_email, token))

    def last_token(self, kind: str, email: str) -> str:
        for sent_kind, to_email, token in reversed(self.sent):
            if sent_kind == kind and to_email == email:
                return token
        raise AssertionError(f"no {kind} notification sent to {email}")


class InlineDispatcher:
    """Runs the send on the calling thread so tests can assert right after."""

    def submit(self, kind, fn, *args) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as exc:  # noqa: BLE001 -- mirrors the executor capturing it
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_store(path) -> AccountStore:
    return AccountStore(db_url=f"sqlite:///{path}")


def make_service(store: AccountStore, clock=utc_now, cache=None, notifier=None, dispatcher=None) -> SessionService:
    """Assemble a SessionService the way api.main does, with an injectable clock."""
    return SessionService(
        store=store,
        issuer=TokenIssuer(SECRET, 900, issuer="authcore", clock=clock),
        rotator=RefreshTokenRotator(store, SECRET, 30 * 24 * 3600, clock=clock),
        verification=VerificationTokenManager(store, SECRET, 24 * 3600, clock=clock),
        resets=PasswordResetManager(store, SECRET, 3600, clock=clock),
        cache=cache if cache is not None else AuthCache(MemoryCacheBackend(clock=clock), ttl=600),
        notifier=notifier if notifier is not None else RecordingNotifier(),
        dispatcher=dispatcher if dispatcher is not None else InlineDispatcher(),
    )


def create_account(
    store: AccountStore,
    email: str,
    *,
    password: str = PASSWORD,
    role: str = "student",
    verified: bool = True,
    active: bool = True,
) -> Account:
    account_id = store.create_account(
        Account(
            email=email,
            full_name=email.split("@")[0].title(),
            role=role,
            hashed_password=hash_password(password),
            is_email_verified=verified,
            is_active=active,
        )
    )
    return store.get_by_id(account_id)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> Generator[AccountStore, None, None]:
    s = make_store(tmp_path / "accounts.db")
    yield s
    s.close()


@pytest.fixture
def cache(clock) -> AuthCache:
    return AuthCache(MemoryCacheBackend(clock=clock), ttl=600)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, clock, cache, notifier) -> SessionService:
    return make_service(store, clock=clock, cache=cache, notifier=notifier)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, service: SessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test components into app.state so TestClient routes see
    an isolated temp DB, an in-memory cache, and a recording notifier instead
    of SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.cache = service.cache
        app.state.dispatcher = service.dispatcher
        app.state.rate_limiter = RateLimiter("1000/minute")
        app.state.session_service = service
        yield
        app.state.rate_limiter.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for route integration tests.

    The service runs on the real clock so tokens issued through HTTP and
    tokens issued here agree. The recording notifier is reachable as
    client.app.state.session_service.notifier.
    """
    store = make_store(tmp_path_factory.mktemp("api") / "accounts.db")
    service = make_service(store)

    admin = create_account(store, "admin@example.com", role="admin")
    token = service.issuer.issue(admin)

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    store.close()

"""
tests/conftest.py -- Shared test fixtures for AuthGate integration tests.

This module provides:
  - RecordingMailer: Mailer that keeps sent messages in memory (no SMTP, no log noise)
  - _make_test_store(): isolated named shared-memory SQLite store
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - env: function-scoped AppEnv (client + store + backend + mailer + limiter)
  - make_user / auth_headers: account and credential factories

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.backend import SqlAuthBackend
from auth.mailer import ERROR_MESSAGES, EmailMessageOptions, Mailer, MailResult
from auth.models import User
from auth.otp import OtpPolicy
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.ratelimit import InMemoryRateLimiter

STRONG_PASSWORD = "Sup3r-Secret!"

_CODE_RE = re.compile(r"Voici votre code : (\d{6})")


# ---------------------------------------------------------------------------
# Fake mail transport
# ---------------------------------------------------------------------------


class RecordingMailer(Mailer):
    """Mailer that records messages instead of sending them.

    Set fail=True to make every send return an UNKNOWN transport failure.
    """

    def __init__(self) -> None:
        super().__init__(get_settings())
        self.outbox: list[EmailMessageOptions] = []
        self.fail = False

    async def send_email(self, options: EmailMessageOptions) -> MailResult:
        if self.fail:
            return MailResult(success=False, message=ERROR_MESSAGES["UNKNOWN"], error_code="UNKNOWN")
        self.outbox.append(options)
        return MailResult(success=True, message=f"Email envoyé avec succès à {options.to}")

    def last_code(self, to: str) -> str:
        """Return the code from the most recent code email sent to `to`."""
        for options in reversed(self.outbox):
            if options.to == to:
                match = _CODE_RE.search(options.text or "")
                if match:
                    return match.group(1)
        raise AssertionError(f"No code email sent to {to}")


# ---------------------------------------------------------------------------
# Store / lifespan helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't
                   share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: UserStore, mailer: Mailer, rate_limiter: InMemoryRateLimiter):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown code that calls
    .cancel() on it keeps working (a real asyncio.Task is required).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.auth_backend = SqlAuthBackend(store)
        app.state.mailer = mailer
        app.state.rate_limiter = rate_limiter
        app.state.otp_policy = OtpPolicy(app.state.auth_backend, mailer, rate_limiter, get_settings())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class AppEnv:
    client: TestClient
    store: UserStore
    backend: SqlAuthBackend
    mailer: RecordingMailer
    rate_limiter: InMemoryRateLimiter


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def env() -> Generator[AppEnv, None, None]:
    """Yield an AppEnv around the real app with isolated state.

    follow_redirects=False is essential for gate and page tests: we assert on
    redirect *locations*, which are invisible once the client follows them.

    slowapi per-IP limits are disabled here; tests that exercise them use
    the ip_limits fixture.
    """
    store = _make_test_store(uuid.uuid4().hex)
    mailer = RecordingMailer()
    rate_limiter = InMemoryRateLimiter()
    app.router.lifespan_context = _patch_lifespan(store, mailer, rate_limiter)
    limiter.enabled = False

    with TestClient(app, follow_redirects=False, raise_server_exceptions=False) as client:
        yield AppEnv(
            client=client,
            store=store,
            backend=app.state.auth_backend,
            mailer=mailer,
            rate_limiter=rate_limiter,
        )

    limiter.enabled = True
    store.close()


@pytest.fixture
def ip_limits(env: AppEnv) -> Generator[None, None, None]:
    """Enable slowapi per-IP limits with fresh counters for one test."""
    limiter.enabled = True
    limiter.reset()
    yield
    limiter.reset()
    limiter.enabled = False


@pytest.fixture
def make_user(env: AppEnv) -> Callable[..., User]:
    """Factory creating accounts directly in the store."""

    def _make(
        email: str = "alice@example.com",
        password: Optional[str] = STRONG_PASSWORD,
        role: str = "user",
        username: Optional[str] = None,
        name: Optional[str] = "Alice",
        email_verified: bool = True,
    ) -> User:
        user = User(
            email=email,
            name=name,
            username=username,
            role=role,
            email_verified=email_verified,
            hashed_password=hash_password(password) if password else None,
        )
        user.id = env.store.create_user(user)
        return env.store.get_by_id(user.id)

    return _make


@pytest.fixture
def auth_headers(env: AppEnv) -> Callable[[User], dict[str, str]]:
    """Factory returning a Bearer header carrying a fresh session for a user."""

    def _headers(user: User) -> dict[str, str]:
        _session, token = env.backend.create_session(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def settings():
    """The cached Settings instance. Use monkeypatch.setattr on it to override fields."""
    return get_settings()


@pytest.fixture
def policy_env(settings) -> Generator[tuple[OtpPolicy, SqlAuthBackend, RecordingMailer, UserStore], None, None]:
    """(policy, backend, mailer, store) without an app, for driving OtpPolicy directly."""
    store = _make_test_store(uuid.uuid4().hex)
    backend = SqlAuthBackend(store)
    mailer = RecordingMailer()
    policy = OtpPolicy(backend, mailer, InMemoryRateLimiter(), settings)
    yield policy, backend, mailer, store
    store.close()

"""
tests/conftest.py -- Shared test fixtures for AuthService tests.

This module provides:
  - FakeNotifier: records outbound emails (raw tokens included) in memory
  - make_store(): isolated named shared-memory SQLite store
  - make_context(): AuthContext wired to a test store and FakeNotifier
  - delete_user_row() / failing_verified_flag(): raw SQL helpers for cascade
    and partial-failure tests
  - _patch_lifespan(): wires a test context into app.state, bypassing real startup
  - api_client: TestClient against the real app with an isolated store

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

SECRET_KEY must be set before api.main is imported: get_settings() refuses to
start without one. BCRYPT_ROUNDS is lowered so the suite stays fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from unittest.mock import MagicMock

# CRITICAL: Set before any core/auth/api import so get_settings() validates.
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters-long")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite:///file:authservice_unused?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.context import AuthContext, build_auth_context
from auth.hashing import hash_password
from auth.models import EMAIL_PROVIDER, Account, NewUser, Role, User, UserProfile
from auth.store import AuthStore
from core.config import get_settings
from core.errors import AuthError, ErrorKind

TEST_ROUNDS = 4
STRONG_PASSWORD = "Str0ng!Passw0rd"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    kind: str
    email: str
    token: str | None = None
    display_code: str | None = None
    name: str | None = None
    language: str | None = None


@dataclass
class FakeNotifier:
    """In-memory Notifier. Set fail_on to a kind ("reset", "changed", "verify") to simulate SMTP failure."""

    sent: list[SentEmail] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)

    def _record(self, message: SentEmail) -> None:
        if message.kind in self.fail_on:
            raise AuthError(ErrorKind.INTERNAL, code="notification_failed")
        self.sent.append(message)

    def send_password_reset_email(self, email, raw_token, name=None):
        self._record(SentEmail("reset", email, token=raw_token, name=name))

    def send_password_changed_email(self, email, name=None):
        self._record(SentEmail("changed", email, name=name))

    def send_verification_email(self, email, raw_token, display_code=None, name=None, language="en"):
        self._record(
            SentEmail("verify", email, token=raw_token, display_code=display_code, name=name, language=language)
        )

    def last(self, kind: str) -> SentEmail:
        matching = [m for m in self.sent if m.kind == kind]
        assert matching, f"no {kind!r} email was sent"
        return matching[-1]


# ---------------------------------------------------------------------------
# Store / context helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str | None = None) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name. Defaults to a
                   random one so every call gets a fresh database.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return AuthStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


def make_context(store: AuthStore | None = None, notifier: FakeNotifier | None = None) -> AuthContext:
    return build_auth_context(get_settings(), store=store or make_store(), notifier=notifier or FakeNotifier())


def create_password_user(
    store: AuthStore,
    email: str,
    password: str = STRONG_PASSWORD,
    role: Role = Role.CUSTOMER,
    verified: bool = False,
    is_active: bool = True,
    name: str | None = "Test User",
) -> User:
    return store.create_user(
        NewUser(
            user=User(id="", email=email, name=name, email_verified=verified),
            profile=UserProfile(user_id="", role=role, is_active=is_active),
            accounts=[
                Account(
                    user_id="",
                    provider=EMAIL_PROVIDER,
                    provider_account_id=email,
                    password_hash=hash_password(password, TEST_ROUNDS),
                )
            ],
        )
    )


def delete_user_row(store: AuthStore, user_id: str) -> None:
    """Delete a users row directly; the schema's ON DELETE CASCADE does the rest."""
    with store.engine.begin() as conn:
        conn.exec_driver_sql("DELETE FROM users WHERE id = ?", (user_id,))


@contextmanager
def failing_verified_flag(store: AuthStore):
    """Abort every write to users.email_verified until the block exits.

    A SQLite trigger fails the statement inside whatever transaction issued
    it, which is how a crash between two writes shows up to the store.
    """
    with store.engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TRIGGER fail_verified_flag BEFORE UPDATE OF email_verified ON users "
            "BEGIN SELECT RAISE(ABORT, 'email_verified write failed'); END"
        )
    try:
        yield
    finally:
        with store.engine.begin() as conn:
            conn.exec_driver_sql("DROP TRIGGER IF EXISTS fail_verified_flag")


def _patch_lifespan(ctx: AuthContext):
    """Return an async context manager that replaces the real lifespan.

    Wires the test context into app.state so TestClient routes see isolated
    test DBs. The OAuth registry is mocked to prevent real network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = ctx
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def ctx(store, notifier) -> AuthContext:
    return make_context(store, notifier)


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthContext, FakeNotifier], None, None]:
    """Yield (client, ctx, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    Per-IP rate limits are disabled; test_api_auth re-enables them where
    it tests them.
    """
    notifier = FakeNotifier()
    ctx = make_context(make_store(), notifier)
    app.router.lifespan_context = _patch_lifespan(ctx)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, ctx, notifier

    limiter.enabled = True
    ctx.store.close()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}

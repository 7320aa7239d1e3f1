"""
tests/conftest.py -- Shared test fixtures for userpass.

This module provides:
  - policy / registry: fast-hashing policy and hasher registry for unit tests
  - engine and the three stores: isolated in-memory SQLite per test
  - audit_sink: an in-memory AuditSink that records every call
  - authenticator: CredentialAuthenticator wired to the stores above
  - api_client: TestClient running the real lifespan against an in-memory DB

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the authenticator runs lookups on its own worker threads and
TestClient runs route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any api/ import so get_policy()
resolves the test configuration when api/main.py is loaded.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator

# CRITICAL: set before any api import -- get_policy() caches the first resolution.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ENABLE_TOKEN_JOB", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///file:test_userpass_api?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from auth.authenticator import CredentialAuthenticator
from auth.hashers import BCryptHasher, HasherRegistry, PasswordVerifier, Pbkdf2Hasher
from auth.models import Account, RequestContext
from auth.store import AccountStore, LoginEventStore, TokenStore, create_store_engine
from core.config import AuthenticationPolicy, load_policy

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingAuditSink:
    """AuditSink that keeps every login failure in memory for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[int | None, str, RequestContext]] = []

    def record_login_failure(self, account_id: int | None, attempted_identifier: str, context: RequestContext) -> None:
        self.events.append((account_id, attempted_identifier, context))


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def policy() -> AuthenticationPolicy:
    return load_policy({"debug": True, "bcrypt_rounds": 4, "lookup_timeout_seconds": 2.0})


@pytest.fixture
def registry() -> HasherRegistry:
    """bcrypt at the minimum cost and a cheap PBKDF2 keep the suite fast."""
    return HasherRegistry([BCryptHasher(rounds=4), Pbkdf2Hasher(iterations=1000)], default_id="bcrypt")


@pytest.fixture
def engine():
    eng = create_store_engine(_memory_url("test_auth"))
    yield eng
    eng.dispose()


@pytest.fixture
def account_store(engine) -> AccountStore:
    return AccountStore(engine)


@pytest.fixture
def token_store(engine) -> TokenStore:
    return TokenStore(engine)


@pytest.fixture
def event_store(engine) -> LoginEventStore:
    return LoginEventStore(engine)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def alice(account_store: AccountStore, registry: HasherRegistry) -> Account:
    """Account a@example.com with bcrypt password Secret123!."""
    account = Account(email="a@example.com", password_info=registry.hash_password("Secret123!"))
    account.id = account_store.create_account(account)
    return account


@pytest.fixture
def authenticator(
    account_store: AccountStore,
    registry: HasherRegistry,
    audit_sink: RecordingAuditSink,
    policy: AuthenticationPolicy,
) -> Generator[CredentialAuthenticator, None, None]:
    auth = CredentialAuthenticator(account_store, PasswordVerifier(registry), audit_sink, policy)
    yield auth
    auth.close()


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient with account api@example.com / apipass123 pre-created.

    Runs the real lifespan, so the stores, registry and authenticator are the
    production wiring pointed at the in-memory DATABASE_URL set above.
    """
    from api.main import app

    with TestClient(app, raise_server_exceptions=True) as client:
        accounts: AccountStore = app.state.accounts
        if accounts.find_by_identifier("api@example.com") is None:
            accounts.create_account(
                Account(email="api@example.com", password_info=app.state.registry.hash_password("apipass123"))
            )
        yield client

"""Unit tests for auth/store.py -- account, token and login event repositories.

Covers:
- In-memory SQLite engines pin SingletonThreadPool explicitly
- AccountStore create / lookup / update_password, unique email
- TokenStore save / find round trip keeps timezone-aware times
- TokenStore.consume() succeeds at most once
- TokenStore.delete_expired() removes only expired rows
- LoginEventStore records failures and filters by email
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import SingletonThreadPool

from auth.hashers import HasherRegistry
from auth.models import Account, LogType, RequestContext
from auth.store import AccountStore, LoginEventStore, TokenStore, create_store_engine
from auth.tokens import issue_token

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestEngine:
    def test_memory_database_pool_is_explicit(self, engine) -> None:
        assert isinstance(engine.pool, SingletonThreadPool)

    def test_file_database_keeps_default_pool(self, tmp_path) -> None:
        eng = create_store_engine(f"sqlite:///{tmp_path / 'userpass.db'}")
        try:
            assert not isinstance(eng.pool, SingletonThreadPool)
        finally:
            eng.dispose()


class TestAccountStore:
    def test_create_and_find(self, account_store: AccountStore, alice: Account) -> None:
        found = account_store.find_by_identifier("a@example.com")
        assert found is not None
        assert found.id == alice.id
        assert found.password_info == alice.password_info
        assert found.created_at

    def test_missing_account(self, account_store: AccountStore) -> None:
        assert account_store.find_by_identifier("ghost@example.com") is None
        assert account_store.get_by_id(9999) is None

    def test_duplicate_email_rejected(self, account_store: AccountStore, alice: Account) -> None:
        with pytest.raises(IntegrityError):
            account_store.create_account(Account(email="a@example.com", password_info=alice.password_info))

    def test_update_password_migrates_hasher(
        self, account_store: AccountStore, registry: HasherRegistry, alice: Account
    ) -> None:
        new_info = registry.resolve("pbkdf2_sha256").hash("N3w-secret")
        assert account_store.update_password(alice.id, new_info) is True
        assert account_store.get_by_id(alice.id).password_info == new_info
        assert account_store.update_password(9999, new_info) is False


class TestTokenStore:
    def test_round_trip(self, token_store: TokenStore) -> None:
        token = issue_token("a@example.com", is_sign_up=True, duration=timedelta(hours=24), now=T0)
        token_store.save(token)
        loaded = token_store.find(token.uuid)
        assert loaded == token
        assert loaded.creation_time.tzinfo is not None

    def test_consume_at_most_once(self, token_store: TokenStore) -> None:
        token = issue_token("a@example.com", is_sign_up=False, duration=timedelta(hours=1), now=T0)
        token_store.save(token)
        assert token_store.consume(token.uuid, now=T0) == token
        assert token_store.consume(token.uuid, now=T0) is None
        assert token_store.find(token.uuid) is None

    def test_delete(self, token_store: TokenStore) -> None:
        token = issue_token("a@example.com", is_sign_up=True, duration=timedelta(hours=1), now=T0)
        token_store.save(token)
        assert token_store.delete(token.uuid) is True
        assert token_store.delete(token.uuid) is False

    def test_delete_expired_keeps_active_tokens(self, token_store: TokenStore) -> None:
        short = issue_token("a@example.com", is_sign_up=True, duration=timedelta(hours=1), now=T0)
        long = issue_token("b@example.com", is_sign_up=False, duration=timedelta(days=2), now=T0)
        exact = issue_token("c@example.com", is_sign_up=True, duration=timedelta(hours=3), now=T0)
        for token in (short, long, exact):
            token_store.save(token)

        removed = token_store.delete_expired(now=T0 + timedelta(hours=3))

        assert removed == 2
        assert token_store.find(short.uuid) is None
        assert token_store.find(exact.uuid) is None
        assert token_store.find(long.uuid) == long


class TestLoginEventStore:
    def test_record_and_list(self, event_store: LoginEventStore) -> None:
        ctx = RequestContext(ip_address="198.51.100.4", user_agent="curl/8", path="/api/v1/auth/login")
        event_store.record_login_failure(7, "a@example.com", ctx)
        event_store.record_login_failure(None, "ghost@example.com", RequestContext())

        events = event_store.list_events()
        assert [e.email for e in events] == ["ghost@example.com", "a@example.com"]
        assert all(e.event_type is LogType.LOGIN_FAILURE for e in events)
        assert events[1].account_id == 7
        assert events[1].ip_address == "198.51.100.4"
        assert events[0].account_id is None

    def test_filter_by_email(self, event_store: LoginEventStore) -> None:
        event_store.record_login_failure(None, "x@example.com", RequestContext())
        event_store.record_login_failure(None, "y@example.com", RequestContext())
        assert [e.email for e in event_store.list_events(email="x@example.com")] == ["x@example.com"]

    def test_database_errors_are_not_raised(self, engine, event_store: LoginEventStore) -> None:
        """Audit is best-effort: a dropped table must not break the login flow."""
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE login_events")
        event_store.record_login_failure(None, "a@example.com", RequestContext())

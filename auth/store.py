"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore, TokenStore and LoginEventStore are the repositories;
_row_to_account / _row_to_token / _row_to_event are the mappers. The
authenticator and the HTTP adapter never touch SQL directly.

AccountStore satisfies the AccountLookup protocol and LoginEventStore the
AuditSink protocol from auth/authenticator.py.

Security:
  All queries use bound parameters. No f-strings in SQL.

  TokenStore.consume() is compare-and-delete inside one transaction: the
  caller gets the token back only if its own DELETE removed the row. Two
  concurrent redemptions of the same token cannot both succeed.

Timestamps are stored as ISO 8601 UTC strings with microsecond precision, so
lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import SingletonThreadPool

from auth.models import Account, LogEvent, LogType, PasswordInfo, RequestContext, Token, utcnow

logger = logging.getLogger("userpass.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hasher", String(50), nullable=False),
    Column("password", Text, nullable=False),
    Column("salt", Text),  # NULL when the hasher embeds its salt (bcrypt)
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("uuid", String(64), primary_key=True),
    Column("email", String(255), nullable=False, index=True),
    Column("creation_time", String(32), nullable=False),
    Column("expiration_time", String(32), nullable=False, index=True),
    Column("is_sign_up", Boolean, nullable=False),
)

_login_events = Table(
    "login_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(30), nullable=False),
    Column("account_id", Integer),  # NULL when no account matched the identifier
    Column("email", String(255)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("path", Text),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///") or ":memory:" in db_url or "mode=memory" in db_url


def create_store_engine(db_url: str) -> Engine:
    """Create the shared engine for all auth stores and ensure the schema exists.

    check_same_thread=False because the authenticator runs lookups on its own
    worker threads. In-memory SQLite databases use SingletonThreadPool: one
    connection per thread, and a shared-cache database lives as long as one
    of them stays open.
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(db_url):
            kwargs["poolclass"] = SingletonThreadPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(utcnow())


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records.

    Usage:
        store = AccountStore(engine)
        store.create_account(Account(email="a@example.com", password_info=registry.hash_password("secret")))
        account = store.find_by_identifier("a@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        info = account.password_info
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    hasher=info.hasher,
                    password=info.password,
                    salt=info.salt,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_by_identifier(self, identifier: str) -> Account | None:
        """Look up an account by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == identifier)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_password(self, account_id: int, info: PasswordInfo) -> bool:
        """Replace the stored password descriptor (reset flow or hasher migration).

        Returns True if a row was updated, False if account_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(hasher=info.hasher, password=info.password, salt=info.salt)
            )
            conn.commit()
        return result.rowcount > 0


class TokenStore:
    """Repository for sign-up and password-reset tokens."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, token: Token) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _tokens.insert().values(
                    uuid=token.uuid,
                    email=token.email,
                    creation_time=_iso(token.creation_time),
                    expiration_time=_iso(token.expiration_time),
                    is_sign_up=token.is_sign_up,
                )
            )
            conn.commit()

    def find(self, token_id: str) -> Token | None:
        """Return the stored token whether or not it has expired."""
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.uuid == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume(self, token_id: str, now: datetime | None = None) -> Token | None:
        """Redeem a token at most once.

        The row is deleted in the same transaction it is read in. Returns the
        token only if this call deleted it and it had not expired at `now`.
        Expired tokens are deleted too but not returned.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.uuid == token_id)).fetchone()
            if row is None:
                return None
            result = conn.execute(_tokens.delete().where(_tokens.c.uuid == token_id))
            if result.rowcount != 1:
                return None
        token = _row_to_token(row)
        if token.is_expired_at(now or utcnow()):
            logger.info("Expired token presented for redemption (is_sign_up=%s)", token.is_sign_up)
            return None
        return token

    def delete(self, token_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.uuid == token_id))
            conn.commit()
        return result.rowcount > 0

    def delete_expired(self, now: datetime | None = None) -> int:
        """Delete all tokens expired at `now`. Returns number of rows removed."""
        cutoff = _iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expiration_time <= cutoff))
            conn.commit()
        return result.rowcount


class LoginEventStore:
    """Persistent audit log of login failures."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record_login_failure(self, account_id: int | None, attempted_identifier: str, context: RequestContext) -> None:
        """Insert one LOGIN_FAILURE event. Best-effort: database errors are logged, not raised."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _login_events.insert().values(
                        event_type=LogType.LOGIN_FAILURE.value,
                        account_id=account_id,
                        email=attempted_identifier,
                        ip_address=context.ip_address,
                        user_agent=context.user_agent,
                        path=context.path,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Failed to persist login failure event")

    def list_events(self, email: str | None = None, limit: int = 100) -> list[LogEvent]:
        """Return events newest first, optionally filtered by attempted email."""
        query = _login_events.select()
        if email is not None:
            query = query.where(_login_events.c.email == email)
        query = query.order_by(_login_events.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_info=PasswordInfo(hasher=row.hasher, password=row.password, salt=row.salt),
        created_at=row.created_at,
    )


def _row_to_token(row) -> Token:
    return Token(
        uuid=row.uuid,
        email=row.email,
        creation_time=datetime.fromisoformat(row.creation_time),
        expiration_time=datetime.fromisoformat(row.expiration_time),
        is_sign_up=bool(row.is_sign_up),
    )


def _row_to_event(row) -> LogEvent:
    return LogEvent(
        id=row.id,
        event_type=LogType(row.event_type),
        account_id=row.account_id,
        email=row.email,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        path=row.path,
        created_at=row.created_at,
    )

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (mostly pure data containers). Stores and the
authenticator do the work; the only logic here is the Token expiry predicate
and the construction-time invariants.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """A submitted identifier/secret pair. Transient: never logged or stored.

    The secret is excluded from repr() so an accidental log line or traceback
    cannot leak it.
    """

    identifier: str
    secret: str = field(repr=False)

    @classmethod
    def from_raw(cls, raw_identifier: str | None, raw_secret: str | None) -> Credential:
        return cls(identifier=(raw_identifier or "").strip(), secret=raw_secret or "")

    @property
    def is_blank(self) -> bool:
        return not self.identifier or not self.secret


@dataclass(frozen=True)
class PasswordInfo:
    """Stored password descriptor.

    hasher names the strategy that produced `password`. Verification always
    dispatches on this value, never on the currently configured default, so
    accounts hashed under an older algorithm keep working.
    """

    hasher: str
    password: str = field(repr=False)
    salt: str | None = field(default=None, repr=False)


@dataclass
class Account:
    """An account record as returned by the account lookup.

    Also serves as the authenticated identity handed back on a successful login.
    """

    email: str
    password_info: PasswordInfo
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """Transport-independent request details attached to audit events."""

    ip_address: str | None = None
    user_agent: str | None = None
    path: str | None = None


# ---------------------------------------------------------------------------
# Authentication results
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    """Externally visible failure classification."""

    INVALID_CREDENTIALS = "invalid_credentials"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class FailureReason(str, Enum):
    """Internal diagnostics only. Never rendered to the end user."""

    VALIDATION = "validation"
    UNKNOWN_IDENTIFIER = "unknown_identifier"
    BAD_PASSWORD = "bad_password"  # noqa: S105 # nosec B105 -- enum label, not a password
    UNKNOWN_HASHER = "unknown_hasher"
    LOOKUP_TIMEOUT = "lookup_timeout"
    LOOKUP_ERROR = "lookup_error"


_REASON_KIND = {
    FailureReason.LOOKUP_TIMEOUT: FailureKind.DEPENDENCY_UNAVAILABLE,
    FailureReason.LOOKUP_ERROR: FailureKind.DEPENDENCY_UNAVAILABLE,
}


@dataclass(frozen=True)
class LoginFailure:
    reason: FailureReason

    @property
    def kind(self) -> FailureKind:
        return _REASON_KIND.get(self.reason, FailureKind.INVALID_CREDENTIALS)


@dataclass(frozen=True)
class AuthResult:
    """Either an authenticated account or a classified failure, never both."""

    account: Account | None = None
    failure: LoginFailure | None = None

    def __post_init__(self) -> None:
        if (self.account is None) == (self.failure is None):
            raise ValueError("AuthResult needs exactly one of account or failure")

    @property
    def ok(self) -> bool:
        return self.account is not None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REDEEMED = "redeemed"
    DELETED = "deleted"


@dataclass(frozen=True)
class Token:
    """A single-use token for sign-up confirmation or password reset.

    uuid is the opaque reference the user presents to redeem the token.
    is_sign_up distinguishes account-activation tokens (True) from
    password-reset tokens (False).

    Expiry is computed on read and never stored as state.
    """

    uuid: str
    email: str
    creation_time: datetime
    expiration_time: datetime
    is_sign_up: bool

    def __post_init__(self) -> None:
        if self.creation_time.tzinfo is None or self.expiration_time.tzinfo is None:
            raise ValueError("Token times must be timezone-aware")
        if self.expiration_time <= self.creation_time:
            raise ValueError("Token expiration_time must be after creation_time")

    def is_expired_at(self, instant: datetime) -> bool:
        return instant >= self.expiration_time

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at(utcnow())


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class LogType(str, Enum):
    LOGIN_FAILURE = "login_failure"


@dataclass
class LogEvent:
    """A persisted audit event. account_id is None when no account matched."""

    event_type: LogType
    email: str | None = None
    account_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    path: str | None = None
    id: int | None = None
    created_at: str | None = None

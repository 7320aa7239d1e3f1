"""
auth/hashers.py -- Pluggable password hashing strategies and their registry.

Security design decisions:
  Dispatch by stored id: every PasswordInfo records which strategy produced
       it. Verification resolves that id in the HasherRegistry rather than
       using the configured default, so accounts hashed under an older
       algorithm keep authenticating while new accounts get the default.

  Fail closed: an id that is not registered (strategy removed, corrupt row)
       verifies as False. It is logged but never raised -- request-time code
       must treat it as an ordinary authentication failure.

  Constant-time comparison: bcrypt.checkpw compares internally in constant
       time; the PBKDF2 strategy uses hmac.compare_digest. Strategies never
       raise on malformed stored values.

  Immutable registry: built once at startup and exposed as a read-only
       mapping. Duplicate ids are rejected with ConfigurationError so the
       registry contents never depend on registration order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Protocol, runtime_checkable

import bcrypt

from auth.models import Credential, PasswordInfo
from core.config import AuthenticationPolicy, ConfigurationError

logger = logging.getLogger("userpass.auth")

BCRYPT = "bcrypt"
PBKDF2_SHA256 = "pbkdf2_sha256"

_BCRYPT_MAX_BYTES = 72


@runtime_checkable
class HashingStrategy(Protocol):
    """Contract for a password hashing algorithm identified by a stable key."""

    id: str

    def hash(self, plain: str) -> PasswordInfo:
        """Hash a plaintext password for a new or updated account."""
        ...

    def matches(self, info: PasswordInfo, plain: str) -> bool:
        """Return True if `plain` matches the stored descriptor."""
        ...


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class BCryptHasher:
    """bcrypt, used directly (no passlib wrapper).

    The salt is embedded in the bcrypt hash string, so PasswordInfo.salt stays
    None. bcrypt only reads the first 72 bytes of its input, and releases
    before 5.0 drop the rest silently. Longer secrets are refused here so a
    difference past byte 72 never goes unnoticed: hash() raises ValueError,
    matches() reports a mismatch.
    """

    id = BCRYPT

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds

    def hash(self, plain: str) -> PasswordInfo:
        raw = plain.encode("utf-8")
        if len(raw) > _BCRYPT_MAX_BYTES:
            raise ValueError(f"bcrypt passwords are limited to {_BCRYPT_MAX_BYTES} bytes")
        hashed = bcrypt.hashpw(raw, bcrypt.gensalt(rounds=self.rounds))
        return PasswordInfo(hasher=self.id, password=hashed.decode("utf-8"))

    def matches(self, info: PasswordInfo, plain: str) -> bool:
        raw = plain.encode("utf-8")
        if len(raw) > _BCRYPT_MAX_BYTES:
            return False
        try:
            return bcrypt.checkpw(raw, info.password.encode("utf-8"))
        except ValueError:
            return False


class Pbkdf2Hasher:
    """PBKDF2-HMAC-SHA256 with a per-password random salt.

    Stored format: password = "<iterations>$<hex digest>", salt = hex string.
    The iteration count travels with the hash so raising the default later does
    not break existing accounts.
    """

    id = PBKDF2_SHA256

    def __init__(self, iterations: int = 600_000) -> None:
        self.iterations = iterations

    @staticmethod
    def _derive(plain: str, salt: bytes, iterations: int) -> str:
        return hashlib.pbkdf2_hmac("sha256", plain.encode("utf-8"), salt, iterations).hex()

    def hash(self, plain: str) -> PasswordInfo:
        salt = secrets.token_bytes(16)
        digest = self._derive(plain, salt, self.iterations)
        return PasswordInfo(hasher=self.id, password=f"{self.iterations}${digest}", salt=salt.hex())

    def matches(self, info: PasswordInfo, plain: str) -> bool:
        try:
            iterations_str, expected = info.password.split("$", 1)
            iterations = int(iterations_str)
            salt = bytes.fromhex(info.salt or "")
        except ValueError:
            return False
        if iterations <= 0 or not salt:
            return False
        return hmac.compare_digest(self._derive(plain, salt, iterations), expected)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class HasherRegistry:
    """Read-only mapping from hasher id to HashingStrategy.

    Usage:
        registry = HasherRegistry([BCryptHasher(), Pbkdf2Hasher()], default_id="bcrypt")
        strategy = registry.resolve(account.password_info.hasher)  # may be None
    """

    def __init__(self, strategies: Iterable[HashingStrategy], default_id: str = BCRYPT) -> None:
        hashers: dict[str, HashingStrategy] = {}
        for strategy in strategies:
            if strategy.id in hashers:
                raise ConfigurationError(f"Duplicate password hasher id: {strategy.id!r}")
            hashers[strategy.id] = strategy
        if default_id not in hashers:
            raise ConfigurationError(
                f"Default password hasher {default_id!r} is not registered " f"(available: {sorted(hashers)})"
            )
        self._hashers: Mapping[str, HashingStrategy] = MappingProxyType(hashers)
        self.default_id = default_id

    def resolve(self, hasher_id: str) -> HashingStrategy | None:
        return self._hashers.get(hasher_id)

    @property
    def default(self) -> HashingStrategy:
        return self._hashers[self.default_id]

    def ids(self) -> list[str]:
        return sorted(self._hashers)

    def hash_password(self, plain: str) -> PasswordInfo:
        """Hash with the default strategy. Used when creating accounts or resetting passwords."""
        return self.default.hash(plain)


def build_registry(policy: AuthenticationPolicy) -> HasherRegistry:
    """Build the startup registry with every built-in strategy.

    Raises ConfigurationError if policy.default_hasher names an unknown strategy.
    """
    registry = HasherRegistry(
        [BCryptHasher(rounds=policy.bcrypt_rounds), Pbkdf2Hasher()],
        default_id=policy.default_hasher,
    )
    logger.info("Password hashers registered: %s (default=%s)", ", ".join(registry.ids()), registry.default_id)
    return registry


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class PasswordVerifier:
    def __init__(self, registry: HasherRegistry) -> None:
        self.registry = registry

    def verify(self, credential: Credential, stored: PasswordInfo) -> bool:
        """Return True only if the strategy named by `stored.hasher` accepts the secret."""
        strategy = self.registry.resolve(stored.hasher)
        if strategy is None:
            logger.warning("No password hasher registered for id %r; rejecting credential", stored.hasher)
            return False
        return strategy.matches(stored, credential.secret)

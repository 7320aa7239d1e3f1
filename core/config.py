"""
core/config.py -- Authentication policy via pydantic-settings.

All environment variable reads for userpass happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_policy() instead, or
receive the AuthenticationPolicy instance through a constructor.

Design patterns used:
  Singleton via lru_cache: get_policy() resolves the policy once at first call
      and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. ssl_required -> SSL_REQUIRED). Type coercion and validation are
      built in. load_policy() also accepts an explicit key -> value mapping so
      the configuration source can be swapped without touching the rest of the
      code.

  frozen=True: the policy is read-only once resolved. Request-time code reads
      it from any number of threads without locking.

Security notes:
  [S1] Production mode (DEBUG not set or false) with SSL_REQUIRED=false is
       allowed but logged at WARNING. Credentials sent over plain HTTP are
       trivially sniffed.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("userpass.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parents[1] / 'auth' / 'userpass.db'}"


class ConfigurationError(Exception):
    """A policy value is missing or malformed. Fatal at startup, never raised per request."""


class AuthenticationPolicy(BaseSettings):
    """Deployment-wide toggles governing security and workflow behaviour.

    All fields have defaults so AuthenticationPolicy() can be instantiated in
    test environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    # debug=False means a production deployment.
    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Security
    # ------------------------------------------------------------------

    ssl_required: bool = False
    default_hasher: str = Field(default="bcrypt", pattern=r"^[a-z0-9_\-]+$")
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    lookup_timeout_seconds: float = Field(default=10.0, gt=0)
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Workflow toggles (consumed by sign-up / reset flows outside this core)
    # ------------------------------------------------------------------

    send_welcome_email: bool = True
    enable_gravatar: bool = True
    enable_token_job: bool = True
    signup_skip_login: bool = False

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_duration_minutes: int = Field(default=60, gt=0)
    token_sweep_interval_seconds: int = Field(default=3600, gt=0)

    @property
    def is_production(self) -> bool:
        return not self.debug

    @property
    def insecure_transport(self) -> bool:
        """True when running in production without requiring SSL [S1]."""
        return self.is_production and not self.ssl_required

    @model_validator(mode="after")
    def warn_on_insecure_transport(self) -> "AuthenticationPolicy":
        """Surface the production-without-SSL condition [S1].

        Non-fatal: the process still starts. Because get_policy() caches the
        instance, the warning is emitted once per process.
        """
        if self.insecure_transport:
            logger.warning(
                "IMPORTANT: running in production mode but SSL_REQUIRED is off. "
                "Without SSL an attacker can easily steal user credentials."
            )
        return self


def load_policy(source: Mapping[str, Any] | None = None) -> AuthenticationPolicy:
    """Resolve the policy from the environment, or from an explicit mapping.

    Mapping keys are field names (e.g. {"ssl_required": True}). Values given in
    the mapping take precedence over environment variables.

    Raises ConfigurationError if any value fails validation.
    """
    try:
        return AuthenticationPolicy(**dict(source or {}))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid authentication policy: {exc}") from exc


@lru_cache
def get_policy() -> AuthenticationPolicy:
    """Return the process-wide AuthenticationPolicy singleton.

    In tests: call get_policy.cache_clear() between test cases if you need to
    inject different environment variables.
    """
    return load_policy()

"""
auth/authenticator.py -- Username/password authentication entry point.

Security design decisions:
  Generic failure [C1]: an unknown identifier, a wrong password, an
       unresolvable hasher and blank input all produce the same
       INVALID_CREDENTIALS kind. FailureReason carries the real cause for
       internal logs only. This prevents identifier enumeration.

  Timing equalization [C2]: when no account is found, the secret is still
       checked against a dummy hash from the default strategy so response time
       does not reveal whether the identifier exists.

  Bounded lookup [C3]: the account lookup runs on the authenticator's own
       thread pool and is awaited with a timeout. A timeout or a lookup error is
       DEPENDENCY_UNAVAILABLE, kept distinct from INVALID_CREDENTIALS.

  Audit [C4]: every failed attempt emits exactly one login-failure event, no
       successful attempt emits any. Audit sink errors are logged and never
       change the authentication outcome.

Per-request failures are returned as AuthResult values, never raised.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol

from auth.hashers import PasswordVerifier
from auth.models import (
    Account,
    AuthResult,
    Credential,
    FailureReason,
    LoginFailure,
    RequestContext,
)
from core.config import AuthenticationPolicy

logger = logging.getLogger("userpass.auth")

PROVIDER_ID = "userpass"


class AccountLookup(Protocol):
    def find_by_identifier(self, identifier: str) -> Account | None: ...


class AuditSink(Protocol):
    def record_login_failure(
        self, account_id: int | None, attempted_identifier: str, context: RequestContext
    ) -> None: ...


class CredentialAuthenticator:
    """Orchestrates lookup, verification and failure auditing.

    Usage:
        authenticator = CredentialAuthenticator(store, PasswordVerifier(registry), events, policy)
        result = authenticator.authenticate("a@example.com", "Secret123!", context)
        if result.ok: ...
        authenticator.close()
    """

    id = PROVIDER_ID

    def __init__(
        self,
        lookup: AccountLookup,
        verifier: PasswordVerifier,
        audit: AuditSink,
        policy: AuthenticationPolicy,
        max_workers: int = 4,
    ) -> None:
        self.lookup = lookup
        self.verifier = verifier
        self.audit = audit
        self.timeout = policy.lookup_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="userpass-lookup")
        # Computed once so the first failed login is not measurably slower [C2].
        self._dummy_info = verifier.registry.hash_password("userpass_timing_dummy")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"

    def authenticate(
        self, raw_identifier: str | None, raw_secret: str | None, context: RequestContext | None = None
    ) -> AuthResult:
        context = context or RequestContext()
        credential = Credential.from_raw(raw_identifier, raw_secret)

        if credential.is_blank:
            self.verifier.verify(credential, self._dummy_info)  # [C2]
            return self._fail(FailureReason.VALIDATION, None, credential, context)

        try:
            account = self._find_account(credential.identifier)
        except FutureTimeoutError:
            logger.error("Account lookup timed out after %.1fs", self.timeout)
            return self._fail(FailureReason.LOOKUP_TIMEOUT, None, credential, context)
        except Exception:
            logger.exception("Account lookup failed")
            return self._fail(FailureReason.LOOKUP_ERROR, None, credential, context)

        if account is None:
            self.verifier.verify(credential, self._dummy_info)  # [C2]
            return self._fail(FailureReason.UNKNOWN_IDENTIFIER, None, credential, context)

        if self.verifier.verify(credential, account.password_info):
            return AuthResult(account=account)

        reason = FailureReason.BAD_PASSWORD
        if self.verifier.registry.resolve(account.password_info.hasher) is None:
            self.verifier.verify(credential, self._dummy_info)  # [C2]
            reason = FailureReason.UNKNOWN_HASHER
        return self._fail(reason, account.id, credential, context)

    def _find_account(self, identifier: str) -> Account | None:
        future = self._executor.submit(self.lookup.find_by_identifier, identifier)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _fail(
        self, reason: FailureReason, account_id: int | None, credential: Credential, context: RequestContext
    ) -> AuthResult:
        failure = LoginFailure(reason=reason)
        logger.info(
            "Login failure (kind=%s reason=%s account_id=%s ip=%s)",
            failure.kind.value,
            reason.value,
            account_id,
            context.ip_address or "unknown",
        )
        try:
            self.audit.record_login_failure(account_id, credential.identifier, context)
        except Exception:
            logger.exception("Could not record login failure audit event")
        return AuthResult(failure=failure)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

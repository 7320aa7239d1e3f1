"""
auth/tokens.py -- Sign-up and password-reset token helpers.

Token lifecycle:
  ACTIVE -> EXPIRED   pure time predicate, computed on read, never stored.
  ACTIVE -> REDEEMED  the owning flow consumes the token (TokenStore.consume).
  * -> DELETED        consumption or the expired-token sweep removes the row.

A token must never be usable twice. TokenStore.consume() is a
compare-and-delete: of two concurrent redeemers, only the one whose DELETE
removed the row gets the token back.

Token ids are uuid4 hex strings (122 random bits). They are references, not
secrets derived from account data.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from auth.models import Token, TokenState, utcnow
from core.config import get_policy

if TYPE_CHECKING:
    from auth.store import TokenStore

logger = logging.getLogger("userpass.auth")


def issue_token(
    email: str, *, is_sign_up: bool, duration: timedelta | None = None, now: datetime | None = None
) -> Token:
    """Create a new token for `email` valid for `duration` from `now`.

    `duration` defaults to the policy's TOKEN_DURATION_MINUTES.
    """
    created = now or utcnow()
    if duration is None:
        duration = timedelta(minutes=get_policy().token_duration_minutes)
    return Token(
        uuid=uuid.uuid4().hex,
        email=email.strip(),
        creation_time=created,
        expiration_time=created + duration,
        is_sign_up=is_sign_up,
    )


def token_state(
    token: Token, *, now: datetime | None = None, redeemed: bool = False, deleted: bool = False
) -> TokenState:
    """Classify a token. Deleted wins over redeemed, redeemed over expired."""
    if deleted:
        return TokenState.DELETED
    if redeemed:
        return TokenState.REDEEMED
    if token.is_expired_at(now or utcnow()):
        return TokenState.EXPIRED
    return TokenState.ACTIVE


def redeem_token(store: TokenStore, token_id: str, *, is_sign_up: bool, now: datetime | None = None) -> Token | None:
    """Consume a token for a sign-up (is_sign_up=True) or reset flow.

    Returns the token on success. Returns None when the token is unknown,
    already consumed, expired, or belongs to the other flow. A token of the
    wrong kind is left in place so the legitimate flow can still use it.
    """
    existing = store.find(token_id)
    if existing is None:
        return None
    if existing.is_sign_up != is_sign_up:
        logger.warning("Token presented to the wrong flow (is_sign_up=%s)", existing.is_sign_up)
        return None
    return store.consume(token_id, now=now)

"""
auth/tokens.py -- Session JWTs and single-use action tokens.

Security design decisions:
  Session tokens: python-jose with HS256. Claims are sub (user id as a
       string), iat and exp, all whole seconds. Expiry is checked against the
       service clock rather than inside jose so one clock drives lockout,
       action-token expiry, and session expiry alike. Every failure --
       malformed, bad signature, expired -- surfaces as Unauthenticated; the
       specific reason only reaches the debug log.

  Action tokens (password reset, email verification): secrets.token_hex(32)
       gives 256 bits of entropy. Only sha256(plaintext) and an absolute
       expiry are written to the user row; the plaintext is returned once for
       out-of-band delivery. A plain digest (not bcrypt) is enough because the
       input is high-entropy, and it lets the store look the token up by hash.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import InvalidOrExpiredToken, Unauthenticated
from auth.models import ActionKind, SessionClaims
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("storefront.auth.tokens")

_ALGORITHM = "HS256"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Return 32 cryptographically random bytes as 64 hex characters."""
    return secrets.token_hex(32)


def hash_token(plaintext: str) -> str:
    """Return the sha256 hex digest stored in place of an action token."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class TokenService:
    """Issues and verifies session tokens; issues and consumes action tokens.

    Session verification is pure (no store access). The liveness half of
    session validation -- user still active, token newer than the last
    password change -- belongs to AuthService.validate_session().
    """

    def __init__(
        self,
        secret_key: str | None = None,
        expire_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._secret_key = secret_key or settings.secret_key
        self.expire_seconds = expire_seconds or settings.token_expire_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def issue(self, user_id: int) -> str:
        now = int(self.clock().timestamp())
        payload = {
            "sub": str(user_id),
            "iat": now,
            "exp": now + self.expire_seconds,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> SessionClaims:
        """Check signature, shape, and expiry. Raises Unauthenticated on any failure."""
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            logger.debug("Session token rejected: malformed")
            raise Unauthenticated() from None

        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            logger.debug("Session token rejected: bad signature")
            raise Unauthenticated() from None

        try:
            user_id = int(claims["sub"])
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            logger.debug("Session token rejected: malformed claims")
            raise Unauthenticated() from None

        if self.clock() >= expires_at:
            logger.debug("Session token rejected: expired")
            raise Unauthenticated()

        return SessionClaims(user_id=user_id, issued_at=issued_at, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Action tokens
    # ------------------------------------------------------------------

    def issue_action_token(self, store: UserStore, user_id: int, kind: ActionKind, ttl: timedelta) -> str:
        """Mint a token, persist only its hash with an absolute expiry, return the plaintext."""
        plaintext = generate_token()
        store.set_action_token(user_id, kind, hash_token(plaintext), self.clock() + ttl)
        return plaintext

    def check_action_token(self, store: UserStore, kind: ActionKind, plaintext: str) -> User:
        """Return the owner of a live token without consuming it."""
        user = store.find_by_action_token(kind, hash_token(plaintext or ""))
        if user is None:
            raise InvalidOrExpiredToken()
        return user

    def consume_action_token(
        self,
        store: UserStore,
        kind: ActionKind,
        plaintext: str,
        new_password: str | None = None,
        **changes,
    ) -> User:
        """Consume a live token exactly once and return its owner.

        Raises InvalidOrExpiredToken when the hash is unknown, expired, or
        already consumed (including by a concurrent request).
        """
        user = store.consume_action_token(kind, hash_token(plaintext or ""), new_password=new_password, **changes)
        if user is None:
            raise InvalidOrExpiredToken()
        return user

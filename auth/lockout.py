"""
auth/lockout.py -- Per-account failed-login counter and temporary lock.

State machine per user, states Active and Locked:

  Active --failure--> Active      login_attempts += 1
  Active --failure--> Locked      when the new count reaches max_attempts;
                                  lock_until = now + lock_duration
  Locked --attempt, now >= lock_until--> Active
                                  lazy unlock: counter zeroed, no sweeper
  Active --success--> Active      login_attempts = 0

While Locked and now < lock_until every attempt fails AccountLocked before
the password is looked at, so a locked account is not a password oracle.

The counter lives on the user row and is updated in SQL by the store
(register_failed_login), which keeps concurrent failures from under-counting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import AccountLocked
from auth.models import EventKind, SecurityEvent, User
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("storefront.auth.lockout")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockoutPolicy:
    def __init__(
        self,
        store: UserStore,
        max_attempts: int | None = None,
        lock_duration: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.max_attempts = max_attempts or settings.lockout_max_attempts
        self.lock_duration = lock_duration or timedelta(minutes=settings.lockout_minutes)
        self.clock = clock

    def is_locked(self, user: User) -> bool:
        return bool(user.account_locked and user.lock_until is not None and self.clock() < user.lock_until)

    def check(self, user: User, source_ip: str | None = None) -> User:
        """Gate a login attempt. Raises AccountLocked while the window is open.

        An expired lock is lifted here and the refreshed user is returned.
        """
        if not user.account_locked:
            return user
        if self.is_locked(user):
            raise AccountLocked(user.lock_until)
        if self.store.clear_lock(user.id):
            logger.info("Lock expired for user id=%s; unlocked", user.id)
            self.store.record_event(
                user.id, SecurityEvent(kind=EventKind.unlock, timestamp=self.clock(), source_ip=source_ip)
            )
        return self.store.find_by_id(user.id) or user

    def record_failure(self, user: User, source_ip: str | None = None) -> User:
        """Count a failed attempt, locking the account when the threshold is reached."""
        lock_until = self.clock() + self.lock_duration
        updated, newly_locked = self.store.register_failed_login(user.id, self.max_attempts, lock_until)
        if newly_locked:
            logger.warning(
                "User id=%s locked after %d failed logins until %s",
                user.id,
                updated.login_attempts,
                lock_until.isoformat(timespec="seconds"),
            )
            self.store.record_event(
                user.id,
                SecurityEvent(
                    kind=EventKind.lock,
                    timestamp=self.clock(),
                    source_ip=source_ip,
                    detail=f"{updated.login_attempts} failed attempts",
                ),
            )
        return updated

    def record_success(self, user: User) -> None:
        if user.login_attempts:
            self.store.reset_login_attempts(user.id)

"""
auth/ratelimit.py -- Per-(client IP, action) fixed-window request limits.

Uses the `limits` package (the engine underneath slowapi) directly, because
these windows are keyed by a named action rather than by route and must be
checked explicitly at the head of the guard pipeline, before any credential
or token work. Exhausting a window never touches lockout state.

Default windows, configurable in core.config:
  login           5 per 15 minutes
  signup          3 per hour
  password-reset  3 per hour (forgot-password and reset-password share it)

Every admitted hit returns a WindowState whose headers() are the
RateLimit-Limit / RateLimit-Remaining / RateLimit-Reset response headers;
RateLimited carries the limit so a 429 can report the same trio.

Storage is whatever RATE_LIMIT_STORAGE_URI names: memory:// for a single
instance, redis:// for several. Window expiry is handled by the storage on
access; no sweeper is needed for correctness.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum

from limits import RateLimitItem, parse
from limits.storage import Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from auth.errors import RateLimited
from core.config import get_settings

logger = logging.getLogger("storefront.auth.ratelimit")


class Action(str, Enum):
    login = "login"
    signup = "signup"
    password_reset = "password-reset"


_MESSAGES: dict[Action, str] = {
    Action.login: "Too many login attempts from this IP, please try again after 15 minutes.",
    Action.signup: "Too many accounts created from this IP, please try again after an hour.",
    Action.password_reset: "Too many password reset attempts from this IP, please try again after an hour.",
}


RATE_LIMIT_HEADERS = ("RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset")


@dataclass(frozen=True)
class WindowState:
    """Counter state of one (ip, action) window right after a hit."""

    limit: int
    remaining: int
    reset_after: int  # seconds until the window resets

    def headers(self) -> dict[str, str]:
        return dict(zip(RATE_LIMIT_HEADERS, (str(self.limit), str(self.remaining), str(self.reset_after))))


class RateLimiter:
    """Fixed-window counters keyed by (client_ip, action).

    Usage:
        limiter = RateLimiter()
        window = limiter.hit(Action.login, "203.0.113.7")   # raises RateLimited when exhausted
        response.headers.update(window.headers())
    """

    def __init__(self, limits: dict[Action, str] | None = None, storage: Storage | None = None) -> None:
        settings = get_settings()
        configured = {
            Action.login: settings.login_rate_limit,
            Action.signup: settings.signup_rate_limit,
            Action.password_reset: settings.password_reset_rate_limit,
        }
        configured.update(limits or {})
        self._items: dict[Action, RateLimitItem] = {action: parse(spec) for action, spec in configured.items()}
        self._storage = storage or storage_from_string(settings.rate_limit_storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)

    def hit(self, action: Action, client_ip: str) -> WindowState:
        """Count one request and return the window state.

        Raises RateLimited if the window is already full.
        """
        action = Action(action)
        item = self._items[action]
        admitted = self._strategy.hit(item, action.value, client_ip)
        reset_at, remaining = self._strategy.get_window_stats(item, action.value, client_ip)
        reset_after = max(1, math.ceil(reset_at - time.time()))
        if admitted:
            return WindowState(limit=item.amount, remaining=remaining, reset_after=reset_after)
        logger.warning("Rate limit exceeded: action=%s ip=%s retry_after=%ds", action.value, client_ip, reset_after)
        raise RateLimited(reset_after, _MESSAGES[action], limit=item.amount)

    def remaining(self, action: Action, client_ip: str) -> int:
        item = self._items[Action(action)]
        return self._strategy.get_window_stats(item, Action(action).value, client_ip).remaining

    def reset(self) -> None:
        self._storage.reset()

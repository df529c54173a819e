"""
api/limiter.py -- Shared slowapi rate limiter instance.

Applies GLOBAL_RATE_LIMIT (default 100 requests per 15 minutes per client
IP) to every route through SlowAPIMiddleware. Routes opt out with
@limiter.exempt (the health check does).

The tighter per-action windows on login, signup, and password reset are not
configured here; they run as RateLimitGuard in api/guards.py.

Using a single shared instance ensures all routes share the same counter
store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.global_rate_limit],
    storage_uri=_settings.rate_limit_storage_uri,
)

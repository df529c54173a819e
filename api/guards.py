"""
api/guards.py -- Ordered request-guard pipeline for auth endpoints.

Each route declares the guards it needs, in the order they run:

    Depends(pipeline(RateLimitGuard(Action.login), CsrfGuard()))
    Depends(pipeline(CsrfGuard(), SessionGuard()))

A guard is a callable taking the Request. It either returns (pass) or raises
an auth.errors.AuthError (stop -- later guards and the handler never run).
The order is the tuple order, not framework registration order:

  RateLimitGuard  per-(client IP, action) window; runs first so a throttled
                  request does no CSRF, credential, or token work
  CsrfGuard       double-submit cookie check for mutating requests
  SessionGuard    session token -> request.state.user
  RoleGuard       request.state.user.role must be in the permitted set

The dependency returned by pipeline() yields request.state.user (None when
no SessionGuard ran).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from fastapi import Request
from slowapi.util import get_remote_address

from auth.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME, verify_double_submit
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import Unauthenticated
from auth.models import Role, User
from auth.ratelimit import Action


class Guard(Protocol):
    def __call__(self, request: Request) -> None: ...


class RateLimitGuard:
    def __init__(self, action: Action) -> None:
        self.action = Action(action)

    def __call__(self, request: Request) -> None:
        request.state.rate_limit = request.app.state.rate_limiter.hit(self.action, get_remote_address(request))


class CsrfGuard:
    def __call__(self, request: Request) -> None:
        verify_double_submit(request.cookies.get(CSRF_COOKIE_NAME), request.headers.get(CSRF_HEADER_NAME))


class SessionGuard:
    def __call__(self, request: Request) -> None:
        get_current_user(request)


class RoleGuard:
    """Must follow a SessionGuard in the same pipeline."""

    def __init__(self, *roles: Role) -> None:
        self.roles = tuple(Role(r) for r in roles)

    def __call__(self, request: Request) -> None:
        user = getattr(request.state, "user", None)
        if user is None:
            raise Unauthenticated()
        get_auth_service(request).restrict_to(user, *self.roles)


def pipeline(*guards: Guard) -> Callable[[Request], User | None]:
    def run_guards(request: Request) -> User | None:
        for guard in guards:
            guard(request)
        return getattr(request.state, "user", None)

    return run_guards

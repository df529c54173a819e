"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two ways to present a session token, checked in priority order:
  1. Authorization: Bearer <token> header -- non-browser API clients.
  2. Session cookie (default "access_token") -- set by login/signup.

Both converge on AuthService.validate_session(), which also enforces the
liveness rules (account active, token newer than the last password change).

get_current_user() raises Unauthenticated; try_get_current_user() is its soft
variant and returns None instead. Role checks run in
the route guard pipeline (api/guards.py RoleGuard), after the session guard.

Errors are raised as auth.errors types; api/main.py maps them to responses.

Layer rule: may import from fastapi (for Request) because this module is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthError
from auth.models import User
from auth.service import AuthService
from core.config import get_settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def session_token_from_request(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(get_settings().session_cookie_name)


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, or None. Never raises for auth failures."""
    try:
        return get_current_user(request)
    except AuthError:
        return None


def get_current_user(request: Request) -> User:
    """Require a valid session. Raises Unauthenticated otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    service = get_auth_service(request)
    user = service.validate_session(session_token_from_request(request))
    request.state.user = user
    return user


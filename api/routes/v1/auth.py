"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST  /auth/signup                 -- create account; sets session cookie (201)
  POST  /auth/login                  -- password login; sets session cookie
  GET   /auth/logout                 -- overwrites session cookie with an expired one
  POST  /auth/forgot-password        -- generic success whether or not the email exists
  PATCH /auth/reset-password/{token} -- consume reset token, set password, new session
  PATCH /auth/verify-email/{token}   -- consume verification token
  PATCH /auth/update-password        -- change password (requires auth)
  PATCH /auth/update-email           -- change email (requires auth)
  GET   /auth/validate-token         -- current user (requires auth)
  GET   /auth/security-events        -- caller's audit log (requires auth)

Guard pipelines (api/guards.py), in execution order:
  signup            RateLimit(signup) -> CSRF
  login             RateLimit(login) -> CSRF
  forgot/reset      RateLimit(password-reset) -> CSRF
  verify-email      CSRF
  update-password   CSRF -> Session
  update-email      CSRF -> Session
  validate-token    Session
  security-events   Session

Handlers are plain `def` so FastAPI runs them in its threadpool; the bcrypt
work inside AuthService never blocks the event loop.

Security:
  - AuthService.login() equalizes timing for unknown emails -- never
    inline find_by_email() + verify_password() here.
  - Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.guards import CsrfGuard, RateLimitGuard, SessionGuard, pipeline
from api.models import (
    EventsData,
    EventsEnvelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    ResetPasswordRequest,
    SecurityEventResponse,
    SessionEnvelope,
    SignupRequest,
    StatusResponse,
    UpdateEmailRequest,
    UpdatePasswordRequest,
    UserData,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import get_auth_service, try_get_current_user
from auth.models import AuthResult, User
from auth.ratelimit import Action
from core.config import get_settings

router = APIRouter()

_FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=SessionEnvelope, status_code=201)
def signup(
    request: Request,
    body: SignupRequest,
    _: None = Depends(pipeline(RateLimitGuard(Action.signup), CsrfGuard())),
) -> JSONResponse:
    """Register a new account (role=user, unverified) and start a session."""
    result = get_auth_service(request).signup(
        body.name, body.email, body.password, body.password_confirm, get_remote_address(request)
    )
    return _session_response(result, status_code=201)


@router.post("/auth/login", response_model=SessionEnvelope)
def login(
    request: Request,
    body: LoginRequest,
    _: None = Depends(pipeline(RateLimitGuard(Action.login), CsrfGuard())),
) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password produce the same 401 body.
    """
    result = get_auth_service(request).login(body.email, body.password, get_remote_address(request))
    return _session_response(result)


@router.get("/auth/logout", response_model=StatusResponse)
def logout(request: Request) -> JSONResponse:
    """Tell the client to drop its session.

    Session tokens are stateless, so the token itself stays valid until it
    expires; the browser copy is overwritten with an already-expired cookie.
    """
    user = try_get_current_user(request)
    get_auth_service(request).logout(user, get_remote_address(request))
    resp = JSONResponse(content=StatusResponse().model_dump())
    _clear_session_cookie(resp)
    return resp


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    _: None = Depends(pipeline(RateLimitGuard(Action.password_reset), CsrfGuard())),
) -> MessageResponse:
    """Start a password reset. Same response for registered and unknown emails."""
    get_auth_service(request).forgot_password(body.email, get_remote_address(request))
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.patch("/auth/reset-password/{token}", response_model=SessionEnvelope)
def reset_password(
    request: Request,
    token: str,
    body: ResetPasswordRequest,
    _: None = Depends(pipeline(RateLimitGuard(Action.password_reset), CsrfGuard())),
) -> JSONResponse:
    """Consume a reset token, set the new password, and start a session."""
    result = get_auth_service(request).reset_password(
        token, body.password, body.password_confirm, get_remote_address(request)
    )
    return _session_response(result)


@router.patch("/auth/verify-email/{token}", response_model=UserEnvelope)
def verify_email(
    request: Request,
    token: str,
    _: None = Depends(pipeline(CsrfGuard())),
) -> UserEnvelope:
    user = get_auth_service(request).verify_email(token, get_remote_address(request))
    return UserEnvelope(data=UserData(user=UserResponse.from_user(user)))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.patch("/auth/update-password", response_model=SessionEnvelope)
def update_password(
    request: Request,
    body: UpdatePasswordRequest,
    user: User = Depends(pipeline(CsrfGuard(), SessionGuard())),
) -> JSONResponse:
    """Change the caller's password. Sessions issued before the change stop working."""
    result = get_auth_service(request).change_password(
        user, body.current_password, body.new_password, body.password_confirm, get_remote_address(request)
    )
    return _session_response(result)


@router.patch("/auth/update-email", response_model=UserEnvelope)
def update_email(
    request: Request,
    body: UpdateEmailRequest,
    user: User = Depends(pipeline(CsrfGuard(), SessionGuard())),
) -> UserEnvelope:
    """Move the account to a new email address; verification starts over."""
    updated = get_auth_service(request).change_email(
        user, body.email, body.current_password, get_remote_address(request)
    )
    return UserEnvelope(data=UserData(user=UserResponse.from_user(updated)))


@router.get("/auth/validate-token", response_model=UserEnvelope)
def validate_token(user: User = Depends(pipeline(SessionGuard()))) -> UserEnvelope:
    """Return the user behind the presented session token."""
    return UserEnvelope(data=UserData(user=UserResponse.from_user(user)))


@router.get("/auth/security-events", response_model=EventsEnvelope)
def security_events(request: Request, user: User = Depends(pipeline(SessionGuard()))) -> EventsEnvelope:
    events = get_auth_service(request).security_events(user)
    return EventsEnvelope(data=EventsData(events=[SecurityEventResponse.from_event(e) for e in events]))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    envelope = SessionEnvelope(token=result.token, data=UserData(user=UserResponse.from_user(result.user)))
    resp = JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))
    _set_session_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _set_session_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie.

    httponly=True: page JavaScript cannot read it (XSS mitigation).
    samesite="lax": not sent on cross-site POST.
    secure: HTTPS only unless SECURE_COOKIES=false (local development).
    max_age: matches the token expiry so both end together.
    """
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.token_expire_seconds,
    )


def _clear_session_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )

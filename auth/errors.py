"""
auth/errors.py -- Typed failure outcomes for the auth subsystem.

Every AuthService operation either returns its success payload or raises
exactly one AuthError subclass. The api/ layer maps them to HTTP responses in
a single exception handler, so status codes live next to the error kinds:

  ValidationError        400  malformed/missing input, weak or mismatched password
  DuplicateEmail         400  email already registered
  InvalidOrExpiredToken  400  action token unknown, consumed, or expired
  InvalidCredentials     401  wrong email or password (never says which)
  AccountLocked          401  lockout window in force
  Unauthenticated        401  missing/expired/forged session token
  CsrfMismatch           403  X-CSRF-Token header absent or != XSRF-TOKEN cookie
  Forbidden              403  role not in the permitted set
  NotFound               404  admin lookups only
  RateLimited            429  per-(ip, action) window exhausted

Lower layers raise these directly; raw storage exceptions are translated by
auth/store.py and never cross into api/.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 400
    message = "Invalid input."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    status_code = 400
    message = "Email already in use."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    status_code = 400
    message = "Token is invalid or has expired."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Incorrect email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 401

    def __init__(self, until: datetime) -> None:
        self.until = until
        super().__init__(f"Account locked. Please try again after {until.isoformat(timespec='seconds')}.")


class Unauthenticated(AuthError):
    code = "unauthenticated"
    status_code = 401
    message = "Authentication failed. Please log in again."


class CsrfMismatch(AuthError):
    code = "csrf_mismatch"
    status_code = 403
    message = "Invalid CSRF token."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "You do not have permission to perform this action."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Not found."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None, limit: int | None = None) -> None:
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(message)

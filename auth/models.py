"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, token service, and orchestrator do the work.

All datetimes are timezone-aware UTC.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


class ActionKind(str, Enum):
    """Purpose of a single-use action token. Each kind has its own hash/expiry columns."""

    password_reset = "password-reset"
    email_verification = "email-verification"


class EventKind(str, Enum):
    login = "login"
    failed_login = "failed-login"
    logout = "logout"
    password_change = "password-change"
    reset_request = "reset-request"
    reset_complete = "reset-complete"
    lock = "lock"
    unlock = "unlock"
    email_change = "email-change"
    email_verified = "email-verified"


@dataclass
class User:
    """A storefront account.

    password_hash is populated for every persisted user but must never reach
    a response model -- the API layer maps User to UserResponse field by field.

    account_locked / lock_until: the lock is in force only while lock_until is
    in the future. An expired lock is cleared lazily by LockoutPolicy on the
    next login attempt.
    """

    name: str
    email: str  # always lowercase
    password_hash: str
    role: Role = Role.user
    id: int | None = None
    password_changed_at: datetime | None = None
    email_verified: bool = False
    verification_token_hash: str | None = None
    verification_expires: datetime | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires: datetime | None = None
    login_attempts: int = 0
    account_locked: bool = False
    lock_until: datetime | None = None
    last_login: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    active: bool = True


@dataclass
class SecurityEvent:
    """One row of the append-only audit log. Stored apart from the user row."""

    kind: EventKind
    timestamp: datetime
    source_ip: str | None = None
    detail: str | None = None
    user_id: int | None = None
    id: int | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session JWT."""

    user_id: int
    issued_at: datetime
    expires_at: datetime


@dataclass
class AuthResult:
    """Successful outcome of signup / login / password change: the user plus a fresh session token."""

    user: User
    token: str

"""
auth/service.py -- AuthService, the orchestrator behind every auth endpoint.

Composes UserStore (credentials + audit log), TokenService (session JWTs,
action tokens), LockoutPolicy (failed-login counter), and a Mailer (token
delivery). Rate limiting and the CSRF check run earlier, in the api/ guard
pipeline, so by the time an operation here starts the request has already
been admitted.

Outcome contract:
  Each public method returns its success payload or raises exactly one
  auth.errors.AuthError subclass. Nothing else is expected to escape; an
  unexpected exception is a 500 and is logged by the transport layer.

Anti-enumeration:
  login() gives one InvalidCredentials shape for "no such email" and "wrong
  password", running a dummy bcrypt check in the first case so timing
  matches. forgot_password() returns None whether or not the account
  exists.

Concurrency:
  Methods are synchronous and CPU-heavy (bcrypt). Routes call them from plain
  `def` handlers, which FastAPI runs in its threadpool.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import Forbidden, InvalidCredentials, NotFound, Unauthenticated, ValidationError
from auth.lockout import LockoutPolicy
from auth.mail import LogMailer, Mailer, redact_email
from auth.models import ActionKind, AuthResult, EventKind, Role, SecurityEvent, User
from auth.passwords import burn_dummy_check, validate_new_password
from auth.store import UserStore, normalize_email
from auth.tokens import TokenService
from core.config import get_settings

logger = logging.getLogger("storefront.auth")

MAX_NAME_LENGTH = 50
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_email(email: str | None) -> str:
    if not email or not _EMAIL_RE.match(email.strip()):
        raise ValidationError("Please provide a valid email.")
    return normalize_email(email)


class AuthService:
    """Signup, login, logout, password and email lifecycle, session validation.

    Usage:
        service = AuthService(UserStore())
        result = service.signup("Alice", "alice@example.com", "Str0ng!Pass", "Str0ng!Pass")
        user = service.validate_session(result.token)
    """

    def __init__(
        self,
        store: UserStore,
        *,
        tokens: TokenService | None = None,
        lockout: LockoutPolicy | None = None,
        mailer: Mailer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.clock = clock
        self.tokens = tokens or TokenService(clock=clock)
        self.lockout = lockout or LockoutPolicy(store, clock=clock)
        self.mailer: Mailer = mailer or LogMailer()
        self.verification_ttl = timedelta(hours=settings.verification_token_hours)
        self.reset_ttl = timedelta(minutes=settings.reset_token_minutes)
        self.require_verified_email = settings.require_verified_email

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def signup(
        self,
        name: str | None,
        email: str | None,
        password: str | None,
        password_confirm: str | None,
        client_ip: str | None = None,
    ) -> AuthResult:
        """Create an unverified user account and log it in.

        A 24h email verification token is handed to the mailer. Raises
        ValidationError for bad input and DuplicateEmail for a taken address.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Please provide your name.")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name cannot be more than {MAX_NAME_LENGTH} characters.")
        email = _require_email(email)
        validate_new_password(password, password_confirm)

        user = self.store.create(name, email, password, role=Role.user)
        verification_token = self.tokens.issue_action_token(
            self.store, user.id, ActionKind.email_verification, self.verification_ttl
        )
        self._deliver(user.email, verification_token, ActionKind.email_verification)
        logger.info("Signup: user id=%s from %s", user.id, client_ip or "unknown")
        return AuthResult(user=self.store.find_by_id(user.id), token=self.tokens.issue(user.id))

    def login(self, email: str | None, password: str | None, client_ip: str | None = None) -> AuthResult:
        """Authenticate with email and password.

        Raises ValidationError (missing fields), AccountLocked (lockout window
        open; the password is not checked), or InvalidCredentials.
        """
        if not email or not password:
            raise ValidationError("Please provide email and password.")

        user = self.store.find_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt
            burn_dummy_check(password)
            raise InvalidCredentials()

        user = self.lockout.check(user, client_ip)

        if not self.store.verify_password(user, password):
            self.lockout.record_failure(user, client_ip)
            self._record(user.id, EventKind.failed_login, client_ip)
            logger.info("Failed login for user id=%s from %s", user.id, client_ip or "unknown")
            raise InvalidCredentials()

        if self.require_verified_email and not user.email_verified:
            raise InvalidCredentials("Please verify your email before logging in.")

        self.lockout.record_success(user)
        self.store.record_login(user.id, client_ip)
        self._record(user.id, EventKind.login, client_ip)
        return AuthResult(user=self.store.find_by_id(user.id), token=self.tokens.issue(user.id))

    def logout(self, user: User | None, client_ip: str | None = None) -> None:
        """Record the logout. The client discards its token; sessions are stateless."""
        if user is not None:
            self._record(user.id, EventKind.logout, client_ip)

    # ------------------------------------------------------------------
    # Sessions and authorization
    # ------------------------------------------------------------------

    def validate_session(self, token: str | None) -> User:
        """Return the live user behind a session token, or raise Unauthenticated.

        Beyond the signature and expiry checks in TokenService, the user must
        still be active and the token must not predate the last password change.
        """
        if not token:
            raise Unauthenticated("You are not logged in. Please log in to get access.")
        claims = self.tokens.verify(token)
        user = self.store.find_by_id(claims.user_id)
        if user is None:
            raise Unauthenticated("The user belonging to this token no longer exists.")
        if user.password_changed_at is not None and claims.issued_at < user.password_changed_at:
            raise Unauthenticated("User recently changed password. Please log in again.")
        return user

    def restrict_to(self, user: User, *roles: Role) -> User:
        if Role(user.role) not in {Role(r) for r in roles}:
            raise Forbidden()
        return user

    # ------------------------------------------------------------------
    # Password lifecycle
    # ------------------------------------------------------------------

    def change_password(
        self,
        user: User,
        current_password: str | None,
        new_password: str | None,
        password_confirm: str | None,
        client_ip: str | None = None,
    ) -> AuthResult:
        """Replace the password of an authenticated user and return a fresh session.

        Every session token issued before the change stops validating.
        """
        if not current_password or not self.store.verify_password(user, current_password):
            raise InvalidCredentials("Your current password is incorrect.")
        validate_new_password(new_password, password_confirm)

        updated = self.store.update_password(user, new_password)
        self._record(user.id, EventKind.password_change, client_ip)
        logger.info("Password changed for user id=%s", user.id)
        return AuthResult(user=updated, token=self.tokens.issue(user.id))

    def forgot_password(self, email: str | None, client_ip: str | None = None) -> None:
        """Send a 1h reset token if the account exists. Always returns None."""
        user = self.store.find_by_email(email) if email else None
        if user is None:
            logger.info("Password reset requested for unknown address %s", redact_email(email or ""))
            return None
        reset_token = self.tokens.issue_action_token(self.store, user.id, ActionKind.password_reset, self.reset_ttl)
        self._record(user.id, EventKind.reset_request, client_ip)
        self._deliver(user.email, reset_token, ActionKind.password_reset)
        return None

    def reset_password(
        self,
        token: str | None,
        new_password: str | None,
        password_confirm: str | None,
        client_ip: str | None = None,
    ) -> AuthResult:
        """Consume a reset token and set a new password in one transaction.

        The token is checked before the password so a weak password does not
        burn a valid token; the consuming write re-checks it, so a concurrent
        second use still fails InvalidOrExpiredToken.
        """
        self.tokens.check_action_token(self.store, ActionKind.password_reset, token or "")
        validate_new_password(new_password, password_confirm)

        user = self.tokens.consume_action_token(
            self.store, ActionKind.password_reset, token or "", new_password=new_password
        )
        self._record(user.id, EventKind.reset_complete, client_ip)
        logger.info("Password reset completed for user id=%s", user.id)
        return AuthResult(user=user, token=self.tokens.issue(user.id))

    # ------------------------------------------------------------------
    # Email lifecycle
    # ------------------------------------------------------------------

    def verify_email(self, token: str | None, client_ip: str | None = None) -> User:
        user = self.tokens.consume_action_token(self.store, ActionKind.email_verification, token or "", email_verified=1)
        self._record(user.id, EventKind.email_verified, client_ip)
        return user

    def change_email(
        self,
        user: User,
        new_email: str | None,
        current_password: str | None,
        client_ip: str | None = None,
    ) -> User:
        """Move the account to a new address; it must be verified again."""
        new_email = _require_email(new_email)
        if not current_password or not self.store.verify_password(user, current_password):
            raise InvalidCredentials("Your current password is incorrect.")
        if new_email == user.email:
            raise ValidationError("New email must differ from the current one.")

        updated = self.store.update_email(user.id, new_email)
        verification_token = self.tokens.issue_action_token(
            self.store, user.id, ActionKind.email_verification, self.verification_ttl
        )
        self._record(user.id, EventKind.email_change, client_ip, detail=f"from {redact_email(user.email)}")
        self._deliver(updated.email, verification_token, ActionKind.email_verification)
        return self.store.find_by_id(user.id)

    # ------------------------------------------------------------------
    # Audit and administration
    # ------------------------------------------------------------------

    def security_events(self, user: User, limit: int = 50) -> list[SecurityEvent]:
        return self.store.list_events(user.id, limit=limit)

    def list_users(self, actor: User) -> list[User]:
        self.restrict_to(actor, Role.admin)
        return self.store.list_users()

    def deactivate_user(self, actor: User, user_id: int) -> None:
        """Soft-delete an account. Admins cannot deactivate themselves."""
        self.restrict_to(actor, Role.admin)
        if user_id == actor.id:
            raise ValidationError("You cannot deactivate your own account.")
        if not self.store.deactivate(user_id):
            raise NotFound("User not found.")
        logger.info("User id=%s deactivated by admin id=%s", user_id, actor.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, user_id: int, kind: EventKind, client_ip: str | None, detail: str | None = None) -> None:
        self.store.record_event(
            user_id, SecurityEvent(kind=kind, timestamp=self.clock(), source_ip=client_ip, detail=detail)
        )

    def _deliver(self, address: str, token: str, kind: ActionKind) -> None:
        # Delivery failures never change the outcome of the calling operation.
        try:
            self.mailer.send_mail(address, token, kind)
        except Exception:
            logger.exception("Mail delivery failed for %s token to %s", kind.value, redact_email(address))

"""Unit tests for auth/service.py -- AuthService orchestration.

Covers:
- signup: unverified user, verification token mailed, session issued
- signup validation: name, email, password strength, confirmation, duplicates
- login: wrong email and wrong password fail identically
- validate_session: missing, deactivated user, token older than password change
- change_password: wrong current password, old sessions invalidated
- forgot/reset password: unknown email is silent, reset token is single-use
- verify_email / change_email lifecycle
- restrict_to and admin account operations
"""

from datetime import timedelta

import pytest

from auth.errors import (
    DuplicateEmail,
    Forbidden,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from auth.models import ActionKind, EventKind, Role
from auth.service import AuthService

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Password"
IP = "203.0.113.7"


class _BrokenMailer:
    def send_mail(self, address, token, kind):
        raise ConnectionError("smtp down")


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


def test_signup_creates_unverified_user_and_mails_token(service, store, mailer):
    result = service.signup("Alice", "Alice@Example.com", PASSWORD, PASSWORD, IP)

    assert result.user.email == "alice@example.com"
    assert result.user.role == Role.user
    assert result.user.email_verified is False
    assert service.validate_session(result.token).id == result.user.id

    token = mailer.last_token("alice@example.com", ActionKind.email_verification)
    assert store.find_by_id(result.user.id).verification_token_hash != token


def test_signup_verification_token_lasts_24_hours(service, store, clock):
    result = service.signup("Alice", "alice@example.com", PASSWORD, PASSWORD, IP)
    assert store.find_by_id(result.user.id).verification_expires == clock() + timedelta(hours=24)


@pytest.mark.parametrize(
    "name, email, password, confirm",
    [
        ("", "alice@example.com", PASSWORD, PASSWORD),
        ("A" * 51, "alice@example.com", PASSWORD, PASSWORD),
        ("Alice", "not-an-email", PASSWORD, PASSWORD),
        ("Alice", None, PASSWORD, PASSWORD),
        ("Alice", "alice@example.com", "weakpass", "weakpass"),
        ("Alice", "alice@example.com", PASSWORD, "Different1!"),
    ],
)
def test_signup_rejects_invalid_input(service, store, name, email, password, confirm):
    with pytest.raises(ValidationError):
        service.signup(name, email, password, confirm, IP)
    assert store.has_users() is False


def test_signup_duplicate_email_any_case(service, alice):
    with pytest.raises(DuplicateEmail):
        service.signup("Alice Two", "ALICE@example.com", PASSWORD, PASSWORD, IP)


def test_signup_succeeds_when_mail_fails(store, clock):
    service = AuthService(store, mailer=_BrokenMailer(), clock=clock)
    result = service.signup("Alice", "alice@example.com", PASSWORD, PASSWORD, IP)
    assert result.user.id is not None


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_success_records_event(service, store, alice, clock):
    result = service.login("ALICE@example.com", PASSWORD, IP)
    assert result.user.id == alice.id
    assert result.user.last_login == clock()
    assert result.user.last_login_ip == IP
    assert store.list_events(alice.id)[0].kind == EventKind.login


def test_wrong_password_and_unknown_email_fail_alike(service, alice):
    with pytest.raises(InvalidCredentials) as wrong_password:
        service.login("alice@example.com", "Wr0ng!Pass", IP)
    with pytest.raises(InvalidCredentials) as unknown_email:
        service.login("nobody@example.com", PASSWORD, IP)
    assert wrong_password.value.message == unknown_email.value.message
    assert wrong_password.value.code == unknown_email.value.code


@pytest.mark.parametrize("email, password", [("", PASSWORD), ("alice@example.com", ""), (None, None)])
def test_login_requires_both_fields(service, alice, email, password):
    with pytest.raises(ValidationError, match="email and password"):
        service.login(email, password, IP)


def test_deactivated_user_cannot_login(service, store, alice):
    store.deactivate(alice.id)
    with pytest.raises(InvalidCredentials):
        service.login("alice@example.com", PASSWORD, IP)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_validate_session_requires_token(service):
    with pytest.raises(Unauthenticated, match="not logged in"):
        service.validate_session(None)


def test_validate_session_rejects_deactivated_user(service, store, alice):
    token = service.login("alice@example.com", PASSWORD, IP).token
    store.deactivate(alice.id)
    with pytest.raises(Unauthenticated, match="no longer exists"):
        service.validate_session(token)


def test_password_change_invalidates_older_sessions(service, alice, clock):
    old_token = service.login("alice@example.com", PASSWORD, IP).token
    clock.advance(seconds=10)

    result = service.change_password(alice, PASSWORD, NEW_PASSWORD, NEW_PASSWORD, IP)

    with pytest.raises(Unauthenticated, match="recently changed password"):
        service.validate_session(old_token)
    assert service.validate_session(result.token).id == alice.id


def test_session_issued_in_same_second_as_change_survives(service, alice):
    """The one-second skew keeps the token returned by the change itself valid."""
    result = service.change_password(alice, PASSWORD, NEW_PASSWORD, NEW_PASSWORD, IP)
    assert service.validate_session(result.token).id == alice.id


def test_restrict_to(service, alice):
    assert service.restrict_to(alice, Role.user, Role.admin) is alice
    with pytest.raises(Forbidden):
        service.restrict_to(alice, Role.admin)


def test_logout_records_event(service, store, alice):
    service.logout(alice, IP)
    service.logout(None, IP)
    assert [e.kind for e in store.list_events(alice.id)] == [EventKind.logout]


# ---------------------------------------------------------------------------
# Password lifecycle
# ---------------------------------------------------------------------------


def test_change_password_wrong_current(service, store, alice):
    with pytest.raises(InvalidCredentials, match="current password is incorrect"):
        service.change_password(alice, "Wr0ng!Pass", NEW_PASSWORD, NEW_PASSWORD, IP)
    assert store.verify_password(store.find_by_id(alice.id), PASSWORD)


def test_change_password_weak_new_password(service, alice):
    with pytest.raises(ValidationError):
        service.change_password(alice, PASSWORD, "short", "short", IP)


def test_forgot_password_unknown_email_sends_nothing(service, mailer):
    assert service.forgot_password("ghost@example.com", IP) is None
    assert mailer.sent == []


def test_forgot_password_mails_reset_token(service, store, alice, mailer, clock):
    assert service.forgot_password("Alice@Example.com", IP) is None
    token = mailer.last_token("alice@example.com", ActionKind.password_reset)
    user = store.find_by_id(alice.id)
    assert user.password_reset_token_hash is not None
    assert user.password_reset_expires == clock() + timedelta(hours=1)
    assert len(token) == 64


def test_reset_password_once(service, store, alice, mailer, clock):
    old_session = service.login("alice@example.com", PASSWORD, IP).token
    service.forgot_password("alice@example.com", IP)
    token = mailer.last_token("alice@example.com", ActionKind.password_reset)
    clock.advance(seconds=10)

    result = service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD, IP)
    assert result.user.id == alice.id
    assert service.validate_session(result.token).id == alice.id
    with pytest.raises(Unauthenticated):
        service.validate_session(old_session)

    with pytest.raises(InvalidOrExpiredToken):
        service.reset_password(token, "Thr33!Pass", "Thr33!Pass", IP)
    assert service.login("alice@example.com", NEW_PASSWORD, IP).user.id == alice.id


def test_reset_password_weak_password_keeps_token(service, alice, mailer):
    service.forgot_password("alice@example.com", IP)
    token = mailer.last_token("alice@example.com", ActionKind.password_reset)
    with pytest.raises(ValidationError):
        service.reset_password(token, "weak", "weak", IP)
    assert service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD, IP).user.id == alice.id


def test_reset_password_expired_token(service, alice, mailer, clock):
    service.forgot_password("alice@example.com", IP)
    token = mailer.last_token("alice@example.com", ActionKind.password_reset)
    clock.advance(minutes=61)
    with pytest.raises(InvalidOrExpiredToken):
        service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD, IP)


def test_reset_password_unlocks_account(service, store, alice, mailer):
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            service.login("alice@example.com", "Wr0ng!Pass", IP)
    service.forgot_password("alice@example.com", IP)
    token = mailer.last_token("alice@example.com", ActionKind.password_reset)
    service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD, IP)
    assert service.login("alice@example.com", NEW_PASSWORD, IP).user.login_attempts == 0


# ---------------------------------------------------------------------------
# Email lifecycle
# ---------------------------------------------------------------------------


def test_verify_email(service, store, mailer):
    result = service.signup("Alice", "alice@example.com", PASSWORD, PASSWORD, IP)
    token = mailer.last_token("alice@example.com", ActionKind.email_verification)

    user = service.verify_email(token, IP)
    assert user.email_verified is True
    assert user.verification_token_hash is None
    assert store.list_events(result.user.id)[0].kind == EventKind.email_verified
    with pytest.raises(InvalidOrExpiredToken):
        service.verify_email(token, IP)


def test_verify_email_token_is_not_a_reset_token(service, mailer):
    service.signup("Alice", "alice@example.com", PASSWORD, PASSWORD, IP)
    token = mailer.last_token("alice@example.com", ActionKind.email_verification)
    with pytest.raises(InvalidOrExpiredToken):
        service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD, IP)


def test_change_email_requires_reverification(service, store, alice, mailer):
    updated = service.change_email(alice, "Alice.New@Example.com", PASSWORD, IP)
    assert updated.email == "alice.new@example.com"
    assert updated.email_verified is False
    assert mailer.tokens_for("alice.new@example.com", ActionKind.email_verification)
    event = store.list_events(alice.id)[0]
    assert event.kind == EventKind.email_change
    assert "alice@example.com" not in (event.detail or "")


def test_change_email_checks_password_and_uniqueness(service, store, alice):
    store.create("Bob", "bob@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials):
        service.change_email(alice, "new@example.com", "Wr0ng!Pass", IP)
    with pytest.raises(DuplicateEmail):
        service.change_email(alice, "BOB@example.com", PASSWORD, IP)
    with pytest.raises(ValidationError):
        service.change_email(alice, "alice@example.com", PASSWORD, IP)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@pytest.fixture
def admin(store):
    return store.create("Root", "root@example.com", PASSWORD, role=Role.admin)


def test_admin_lists_and_deactivates(service, admin, alice):
    assert {u.email for u in service.list_users(admin)} == {"alice@example.com", "root@example.com"}
    service.deactivate_user(admin, alice.id)
    assert [u.email for u in service.list_users(admin)] == ["root@example.com"]
    with pytest.raises(NotFound):
        service.deactivate_user(admin, alice.id)


def test_admin_cannot_deactivate_self(service, admin):
    with pytest.raises(ValidationError):
        service.deactivate_user(admin, admin.id)


def test_non_admin_forbidden(service, alice, admin):
    with pytest.raises(Forbidden):
        service.list_users(alice)
    with pytest.raises(Forbidden):
        service.deactivate_user(alice, admin.id)


def test_security_events_newest_first(service, alice, clock):
    service.login("alice@example.com", PASSWORD, IP)
    clock.advance(seconds=5)
    service.logout(alice, IP)
    kinds = [e.kind for e in service.security_events(alice)]
    assert kinds == [EventKind.logout, EventKind.login]

"""
auth/passwords.py -- bcrypt hashing and the password strength policy.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

bcrypt work is CPU-bound by design (cost from BCRYPT_ROUNDS, default 12).
Callers run it from sync route handlers, which FastAPI dispatches to its
threadpool, so a slow hash never stalls the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import ValidationError
from core.config import get_settings

MIN_PASSWORD_LENGTH = 8
# bcrypt only reads the first 72 bytes; longer inputs are rejected outright
# instead of silently truncated.
MAX_PASSWORD_BYTES = 72

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed stored hash is treated as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Login runs verify_password() against this when the email is unknown so the
# response time does not reveal whether an account exists.
_DUMMY_HASH: str = hash_password("storefront_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    verify_password(plain, _DUMMY_HASH)


def validate_new_password(password: str | None, password_confirm: str | None) -> str:
    """Apply the strength policy and the confirmation match. Returns the password.

    Policy: at least 8 characters with an uppercase letter, a lowercase letter,
    a digit, and a special character.
    """
    if not password:
        raise ValidationError("Please provide a password.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
    if not (_UPPER.search(password) and _LOWER.search(password) and _DIGIT.search(password) and _SPECIAL.search(password)):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character."
        )
    if password != password_confirm:
        raise ValidationError("Passwords do not match.")
    return password

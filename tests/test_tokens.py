"""Unit tests for auth/tokens.py -- session JWTs and single-use action tokens.

Covers:
- issue()/verify() round trip carries the user id and whole-second iat/exp
- verify() rejects malformed, re-signed, and expired tokens as Unauthenticated
- action tokens: only the sha256 hash is stored, plaintext is 64 hex chars
- check_action_token() does not consume; consume_action_token() works once
"""

from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import InvalidOrExpiredToken, Unauthenticated
from auth.models import ActionKind
from auth.tokens import TokenService, generate_token, hash_token

SECRET = "k" * 48


@pytest.fixture
def tokens(clock):
    return TokenService(secret_key=SECRET, expire_seconds=3600, clock=clock)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def test_issue_and_verify(tokens, clock):
    claims = tokens.verify(tokens.issue(42))
    assert claims.user_id == 42
    assert claims.issued_at == clock()
    assert claims.expires_at == clock() + timedelta(seconds=3600)


def test_subject_is_a_string_claim(tokens):
    payload = jwt.get_unverified_claims(tokens.issue(7))
    assert payload["sub"] == "7"
    assert isinstance(payload["iat"], int)
    assert payload["exp"] - payload["iat"] == 3600


def test_token_expires_on_service_clock(tokens, clock):
    token = tokens.issue(1)
    clock.advance(seconds=3599)
    assert tokens.verify(token).user_id == 1
    clock.advance(seconds=1)
    with pytest.raises(Unauthenticated):
        tokens.verify(token)


@pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
def test_malformed_token_rejected(tokens, garbage):
    with pytest.raises(Unauthenticated):
        tokens.verify(garbage)


def test_token_signed_with_other_key_rejected(tokens, clock):
    forged = TokenService(secret_key="x" * 48, clock=clock).issue(1)
    with pytest.raises(Unauthenticated):
        tokens.verify(forged)


def test_token_without_subject_rejected(tokens, clock):
    now = int(clock().timestamp())
    token = jwt.encode({"iat": now, "exp": now + 60}, SECRET, algorithm="HS256")
    with pytest.raises(Unauthenticated):
        tokens.verify(token)


# ---------------------------------------------------------------------------
# Action tokens
# ---------------------------------------------------------------------------


def test_generate_token_is_256_bits_hex():
    token = generate_token()
    assert len(token) == 64
    int(token, 16)
    assert generate_token() != token


def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_only_hash_is_stored(tokens, store, alice):
    plaintext = tokens.issue_action_token(store, alice.id, ActionKind.password_reset, timedelta(hours=1))
    user = store.find_by_id(alice.id)
    assert user.password_reset_token_hash == hash_token(plaintext)
    assert user.password_reset_token_hash != plaintext


def test_check_does_not_consume(tokens, store, alice):
    plaintext = tokens.issue_action_token(store, alice.id, ActionKind.password_reset, timedelta(hours=1))
    assert tokens.check_action_token(store, ActionKind.password_reset, plaintext).id == alice.id
    assert tokens.check_action_token(store, ActionKind.password_reset, plaintext).id == alice.id


def test_consume_works_once(tokens, store, alice):
    plaintext = tokens.issue_action_token(store, alice.id, ActionKind.email_verification, timedelta(hours=24))
    user = tokens.consume_action_token(store, ActionKind.email_verification, plaintext, email_verified=1)
    assert user.email_verified is True
    with pytest.raises(InvalidOrExpiredToken):
        tokens.consume_action_token(store, ActionKind.email_verification, plaintext, email_verified=1)


def test_reissue_replaces_earlier_token(tokens, store, alice):
    first = tokens.issue_action_token(store, alice.id, ActionKind.password_reset, timedelta(hours=1))
    second = tokens.issue_action_token(store, alice.id, ActionKind.password_reset, timedelta(hours=1))
    with pytest.raises(InvalidOrExpiredToken):
        tokens.check_action_token(store, ActionKind.password_reset, first)
    assert tokens.check_action_token(store, ActionKind.password_reset, second).id == alice.id


def test_expired_action_token_rejected(tokens, store, alice, clock):
    plaintext = tokens.issue_action_token(store, alice.id, ActionKind.password_reset, timedelta(hours=1))
    clock.advance(minutes=61)
    with pytest.raises(InvalidOrExpiredToken):
        tokens.check_action_token(store, ActionKind.password_reset, plaintext)


def test_unknown_action_token_rejected(tokens, store, alice):
    with pytest.raises(InvalidOrExpiredToken):
        tokens.consume_action_token(store, ActionKind.password_reset, generate_token())

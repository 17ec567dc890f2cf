"""
tests/test_tokens.py -- Unit tests for auth/tokens.py (TokenCodec).

Covers:
  - issue/verify round trip with optional claims
  - None claims dropped, unknown claims ignored
  - Expired, tampered, wrong-key and malformed tokens, each with its own code
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from auth.tokens import TOKEN_EXPIRED, TOKEN_INVALID_SIGNATURE, TOKEN_MALFORMED, TokenCodec
from core.errors import AuthError, ErrorKind

SECRET = "unit-test-secret-key-with-at-least-32-chars"


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(SECRET, default_ttl=3600)


def test_round_trip_carries_subject_and_claims(codec):
    token = codec.issue("user-1", {"email": "a@b.co", "role": "employee", "employeeType": "driver"})
    claims = codec.verify(token)
    assert claims.sub == "user-1"
    assert claims.email == "a@b.co"
    assert claims.role == "employee"
    assert claims.employee_type == "driver"
    assert claims.exp - claims.iat == timedelta(seconds=3600)


def test_none_claims_are_dropped_and_unknown_claims_ignored(codec):
    token = codec.issue("user-2", {"email": None, "role": "customer", "isAdmin": True})
    payload = jwt.get_unverified_claims(token)
    assert "email" not in payload
    assert "isAdmin" not in payload
    assert payload["role"] == "customer"


def test_explicit_ttl_overrides_default(codec):
    claims = codec.verify(codec.issue("user-3", ttl=60))
    assert claims.exp - claims.iat == timedelta(seconds=60)


def test_expired_token(codec):
    token = codec.issue("user-4", ttl=-10)
    with pytest.raises(AuthError) as exc_info:
        codec.verify(token)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert exc_info.value.code == TOKEN_EXPIRED


def test_token_signed_with_other_key(codec):
    other = TokenCodec("a-completely-different-secret-key-of-32+", default_ttl=3600)
    with pytest.raises(AuthError) as exc_info:
        codec.verify(other.issue("user-5"))
    assert exc_info.value.code == TOKEN_INVALID_SIGNATURE


def test_tampered_payload_fails_signature(codec):
    token = codec.issue("user-6", {"role": "customer"})
    header, _payload, signature = token.split(".")
    forged_payload = jwt.encode({"sub": "user-6", "role": "admin"}, "x" * 32).split(".")[1]
    with pytest.raises(AuthError) as exc_info:
        codec.verify(f"{header}.{forged_payload}.{signature}")
    assert exc_info.value.code == TOKEN_INVALID_SIGNATURE


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b", "a.b.c"])
def test_malformed_tokens(codec, token):
    with pytest.raises(AuthError) as exc_info:
        codec.verify(token)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert exc_info.value.code == TOKEN_MALFORMED


def test_empty_secret_is_rejected():
    with pytest.raises(ValueError):
        TokenCodec("")

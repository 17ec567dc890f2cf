"""
tests/test_store.py -- Unit tests for auth/store.py (AuthStore).

Covers:
  - create_user is all-or-nothing on duplicate email / provider identity
  - Deleting a user cascades to profile, accounts and tokens
  - link_account writes the account and the user update together
  - Consuming an email-verification token marks the user verified
  - Compare-and-swap token consumption
  - Atomic failed-attempt counting and lock threshold
  - Timestamps round-trip as aware UTC datetimes
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import EMAIL_PROVIDER, Account, NewUser, TokenPurpose, User, UserProfile, VerificationToken
from auth.store import from_iso, to_iso
from conftest import create_password_user, delete_user_row, failing_verified_flag
from core.errors import AuthError, ErrorKind

NOW = datetime(2025, 6, 1, 8, 30, tzinfo=timezone.utc)


def _new_user(email, provider="google", provider_account_id="pid-1") -> NewUser:
    return NewUser(
        user=User(id="", email=email),
        profile=UserProfile(user_id=""),
        accounts=[Account(user_id="", provider=provider, provider_account_id=provider_account_id)],
    )


def test_create_user_fills_ids(store):
    user = store.create_user(_new_user("ids@example.com"))
    assert user.id
    assert store.find_profile_by_user_id(user.id) is not None
    assert store.find_account_for_user(user.id, "google").id


def test_duplicate_email_writes_nothing(store):
    store.create_user(_new_user("dup@example.com", provider_account_id="a"))
    with pytest.raises(AuthError) as exc_info:
        store.create_user(_new_user("dup@example.com", provider_account_id="b"))
    assert exc_info.value.kind is ErrorKind.DUPLICATE
    assert store.find_account_by_provider_and_id("google", "b") is None


def test_duplicate_provider_identity_rolls_back_user(store):
    store.create_user(_new_user("first@example.com", provider_account_id="same"))
    with pytest.raises(AuthError):
        store.create_user(_new_user("second@example.com", provider_account_id="same"))
    assert store.find_user_by_email("second@example.com") is None


def test_update_user_rejects_unknown_fields(store):
    user = create_password_user(store, "fields@example.com")
    with pytest.raises(ValueError):
        store.update_user(user.id, role="admin")


def test_delete_user_cascades(store):
    user = create_password_user(store, "cascade@example.com")
    store.upsert_verification_token(
        VerificationToken(user_id=user.id, purpose=TokenPurpose.PASSWORD_RESET, token_hash="h" * 64, expires_at=NOW)
    )
    delete_user_row(store, user.id)
    assert store.find_profile_by_user_id(user.id) is None
    assert store.find_account_for_user(user.id, EMAIL_PROVIDER) is None
    assert store.find_verification_token(user.id, TokenPurpose.PASSWORD_RESET) is None


def _seed_token(store, user_id, expires_at=NOW + timedelta(hours=1)) -> None:
    store.upsert_verification_token(
        VerificationToken(
            user_id=user_id, purpose=TokenPurpose.PASSWORD_RESET, token_hash="a" * 64, expires_at=expires_at
        )
    )


def test_consume_is_compare_and_swap(store):
    user = create_password_user(store, "cas@example.com")
    _seed_token(store, user.id)
    assert store.consume_verification_token(user.id, TokenPurpose.PASSWORD_RESET, "a" * 64, NOW) is True
    assert store.consume_verification_token(user.id, TokenPurpose.PASSWORD_RESET, "a" * 64, NOW) is False


def test_consume_refuses_expired_token(store):
    user = create_password_user(store, "casexp@example.com")
    _seed_token(store, user.id, expires_at=NOW - timedelta(seconds=1))
    assert store.consume_verification_token(user.id, TokenPurpose.PASSWORD_RESET, "a" * 64, NOW) is False


def test_record_failed_attempt_locks_at_threshold(store):
    user = create_password_user(store, "fail@example.com")
    _seed_token(store, user.id)
    lock_until = NOW + timedelta(minutes=15)
    for expected in range(1, 3):
        row = store.record_failed_attempt(user.id, TokenPurpose.PASSWORD_RESET, 3, lock_until)
        assert row.attempts == expected
        assert row.locked_until is None
    row = store.record_failed_attempt(user.id, TokenPurpose.PASSWORD_RESET, 3, lock_until)
    assert row.attempts == 3
    assert row.locked_until == lock_until


def test_clear_expired_lock(store):
    user = create_password_user(store, "unlock@example.com")
    _seed_token(store, user.id)
    for _ in range(3):
        store.record_failed_attempt(user.id, TokenPurpose.PASSWORD_RESET, 3, NOW)
    assert store.clear_expired_lock(user.id, TokenPurpose.PASSWORD_RESET, NOW - timedelta(seconds=1)) is False
    assert store.clear_expired_lock(user.id, TokenPurpose.PASSWORD_RESET, NOW) is True
    row = store.find_verification_token(user.id, TokenPurpose.PASSWORD_RESET)
    assert row.attempts == 0
    assert row.locked_until is None


def test_iso_round_trip():
    assert from_iso(to_iso(NOW)) == NOW
    naive = datetime(2025, 1, 1, 0, 0)
    assert from_iso(to_iso(naive)).tzinfo is not None
    assert to_iso(None) is None and from_iso(None) is None


def _google_account(user_id: str, pid: str = "g-link") -> Account:
    return Account(user_id=user_id, provider="google", provider_account_id=pid)


def test_link_account_marks_verified_and_sets_image(store):
    user = create_password_user(store, "link@example.com")
    store.link_account(_google_account(user.id), mark_verified=True, image="https://img/a.png")
    reloaded = store.find_user_by_id(user.id)
    assert reloaded.email_verified is True
    assert reloaded.email_verified_at is not None
    assert reloaded.image == "https://img/a.png"
    assert store.find_account_for_user(user.id, "google") is not None


def test_link_account_keeps_existing_verification_time(store):
    user = create_password_user(store, "linked-before@example.com", verified=True)
    store.update_user(user.id, email_verified_at=NOW)
    store.link_account(_google_account(user.id, "g-keep"), mark_verified=True)
    assert store.find_user_by_id(user.id).email_verified_at == NOW


def test_link_account_failure_writes_nothing(store):
    user = create_password_user(store, "halfway@example.com")
    with failing_verified_flag(store):
        with pytest.raises(AuthError):
            store.link_account(_google_account(user.id, "g-half"), mark_verified=True)
    assert store.find_account_by_provider_and_id("google", "g-half") is None
    assert store.find_user_by_id(user.id).email_verified is False


def test_consuming_email_verification_marks_user_verified(store):
    user = create_password_user(store, "consume-verify@example.com")
    store.upsert_verification_token(
        VerificationToken(
            user_id=user.id,
            purpose=TokenPurpose.EMAIL_VERIFICATION,
            token_hash="b" * 64,
            expires_at=NOW + timedelta(hours=1),
        )
    )
    assert store.consume_verification_token(user.id, TokenPurpose.EMAIL_VERIFICATION, "b" * 64, NOW) is True
    reloaded = store.find_user_by_id(user.id)
    assert reloaded.email_verified is True
    assert reloaded.email_verified_at == NOW


def test_consuming_reset_token_leaves_verification_alone(store):
    user = create_password_user(store, "consume-reset@example.com")
    _seed_token(store, user.id)
    assert store.consume_verification_token(user.id, TokenPurpose.PASSWORD_RESET, "a" * 64, NOW) is True
    assert store.find_user_by_id(user.id).email_verified is False


def test_consume_refuses_token_at_exact_expiry(store):
    user = create_password_user(store, "edge@example.com")
    _seed_token(store, user.id, expires_at=NOW)
    assert store.consume_verification_token(user.id, TokenPurpose.PASSWORD_RESET, "a" * 64, NOW) is False


def test_profile_language_round_trips(store):
    user = create_password_user(store, "lang@example.com")
    profile = store.find_profile_by_user_id(user.id)
    assert profile.preferred_language == "en"
    profile.preferred_language = "fr"
    store.upsert_profile(profile)
    assert store.find_profile_by_user_id(user.id).preferred_language == "fr"

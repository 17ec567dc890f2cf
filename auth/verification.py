"""
auth/verification.py -- Single-use email-verification and password-reset tokens.

Lifecycle per (user, purpose):

    NONE --issue()--> ISSUED --redeem() ok--> CONSUMED
                        |--expires_at passes--> EXPIRED
                        |--max failed attempts--> LOCKED (for lock_minutes)

Security design decisions:
  Entropy: secrets.token_hex(32) -> 256 random bits, hex encoded. The raw
       value goes back to the caller for delivery and is never persisted or
       logged; only hash_secret(raw) is stored.

  Display code (email verification only): the first 8 hex characters,
       uppercased, are shown in the email for manual entry. Being short, the
       code is stored as a bcrypt hash rather than a fast digest, and the
       attempt lock caps guessing at max_attempts per lock window.

  Redemption order: clear an elapsed lock -> refuse if locked -> refuse if
       expired -> constant-time compare -> compare-and-swap consume. The CAS
       re-checks the verified hash in its WHERE clause, so when two requests
       race with the same valid token exactly one of them gets rowcount 1.

  Failed attempts: every failed redemption (wrong token or expired token)
       goes through AuthStore.record_failed_attempt(), a single UPDATE that
       increments the counter and sets locked_until once it reaches the
       threshold. There is no read-modify-write in Python.

  Re-issuing: a new token resets the counter, except while a lock is still
       running -- requesting a fresh token must not be a way around the lock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from auth.hashing import DEFAULT_BCRYPT_ROUNDS, hash_password, hash_secret, verify_password, verify_secret
from auth.models import TokenPurpose, VerificationToken
from auth.store import AuthStore, utcnow
from core.errors import AuthError, ErrorKind
from core.sanitizer import sanitize_token

logger = logging.getLogger("authservice.auth.verification")

DEFAULT_TTL_SECONDS = 2 * 60 * 60
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_MINUTES = 15
DISPLAY_CODE_LENGTH = 8

TOKEN_INVALID = "token_invalid"
TOKEN_EXPIRED = "token_expired"
TOKEN_LOCKED = "token_locked"


@dataclass
class RateLimitStatus:
    is_locked: bool
    minutes_remaining: int


@dataclass
class IssuedToken:
    """What issue() hands back for delivery. Never stored as-is."""

    token: str
    expires_at: datetime
    display_code: str | None = None


def check_rate_limit(
    attempts: int,
    locked_until: datetime | None,
    now: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    lock_minutes: int = DEFAULT_LOCK_MINUTES,
) -> RateLimitStatus:
    """Decide whether a (user, purpose) pair is currently locked out.

    - locked_until in the future: locked, minutes rounded up.
    - otherwise attempts >= max_attempts: locked for a fresh lock window.
    - otherwise: not locked.
    """
    now = now or utcnow()
    if locked_until is not None and now < locked_until:
        minutes = math.ceil((locked_until - now) / timedelta(minutes=1))
        return RateLimitStatus(is_locked=True, minutes_remaining=minutes)
    if attempts >= max_attempts:
        return RateLimitStatus(is_locked=True, minutes_remaining=lock_minutes)
    return RateLimitStatus(is_locked=False, minutes_remaining=0)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """A token without an expiry is treated as expired.

    Expiry is inclusive: at now == expires_at the token is already expired,
    matching the `expires_at > now` guard of the consuming UPDATE.
    """
    if expires_at is None:
        return True
    return (now or utcnow()) >= expires_at


class VerificationTokenManager:
    """Issues and redeems hashed, expiring, single-use tokens.

    Usage:
        manager = VerificationTokenManager(store)
        issued = manager.issue(user.id, TokenPurpose.PASSWORD_RESET)
        notifier.send_password_reset_email(user.email, issued.token)
        ...
        user_id = manager.redeem_link(TokenPurpose.PASSWORD_RESET, token_from_link)
    """

    def __init__(
        self,
        store: AuthStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lock_minutes: int = DEFAULT_LOCK_MINUTES,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_attempts = max_attempts
        self.lock_minutes = lock_minutes
        self._bcrypt_rounds = bcrypt_rounds
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user_id: str, purpose: TokenPurpose) -> IssuedToken:
        """Generate a token, persist its hash, and return the raw value once."""
        purpose = TokenPurpose(purpose)
        now = self._clock()
        raw = secrets.token_hex(32)
        expires_at = now + self.ttl

        display_code: str | None = None
        display_code_hash: str | None = None
        if purpose is TokenPurpose.EMAIL_VERIFICATION:
            display_code = raw[:DISPLAY_CODE_LENGTH].upper()
            display_code_hash = hash_password(display_code, self._bcrypt_rounds)

        attempts, locked_until = 0, None
        existing = self._store.find_verification_token(user_id, purpose)
        if existing is not None and existing.locked_until is not None and existing.locked_until > now:
            attempts, locked_until = existing.attempts, existing.locked_until

        self._store.upsert_verification_token(
            VerificationToken(
                user_id=user_id,
                purpose=purpose,
                token_hash=hash_secret(raw),
                display_code_hash=display_code_hash,
                expires_at=expires_at,
                attempts=attempts,
                locked_until=locked_until,
            )
        )
        logger.info("Issued %s token for user %s (expires %s)", purpose.value, user_id, expires_at.isoformat())
        return IssuedToken(token=raw, expires_at=expires_at, display_code=display_code)

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    def redeem(self, user_id: str, purpose: TokenPurpose, candidate: str) -> str:
        """Consume the user's token if candidate matches. Returns user_id.

        Raises:
            AuthError(RATE_LIMITED, code=token_locked)  while locked out.
            AuthError(UNAUTHORIZED, code=token_expired) past expires_at.
            AuthError(UNAUTHORIZED, code=token_invalid) on mismatch, when no
                token is outstanding, or when a concurrent request consumed it first.
        """
        purpose = TokenPurpose(purpose)
        candidate = sanitize_token(candidate)
        now = self._clock()

        row = self._store.find_verification_token(user_id, purpose)
        if row is None or row.token_hash is None:
            raise _invalid()

        if row.locked_until is not None and row.locked_until <= now:
            self._store.clear_expired_lock(user_id, purpose, now)
            row.attempts, row.locked_until = 0, None

        status = check_rate_limit(row.attempts, row.locked_until, now, self.max_attempts, self.lock_minutes)
        if status.is_locked:
            raise _locked(status.minutes_remaining)

        if is_expired(row.expires_at, now):
            self._record_failure(user_id, purpose, now)
            raise AuthError(ErrorKind.UNAUTHORIZED, "Token has expired.", code=TOKEN_EXPIRED)

        if not candidate or not self._matches(row, candidate):
            self._record_failure(user_id, purpose, now)
            raise _invalid()

        if not self._store.consume_verification_token(user_id, purpose, row.token_hash, now):
            # Another request consumed it between our read and our write.
            raise _invalid()

        logger.info("Consumed %s token for user %s", purpose.value, user_id)
        return user_id

    def redeem_link(self, purpose: TokenPurpose, raw_token: str) -> str:
        """Redeem a token that arrived with no other state (e.g. a reset link).

        The hash lookup identifies the owner; redemption then runs through
        redeem() so locks, expiry and the CAS all apply. Returns the user id.

        A token whose hash matches no row has no owner to charge, so that
        miss is reported as token_invalid without counting an attempt. Guessing
        a 256-bit token is not bounded by the lock; the per-IP limits on the
        routes are the only throttle on this path.
        """
        raw_token = sanitize_token(raw_token)
        if not raw_token:
            raise _invalid()
        row = self._store.find_verification_token_by_hash(TokenPurpose(purpose), hash_secret(raw_token))
        if row is None:
            raise _invalid()
        return self.redeem(row.user_id, purpose, raw_token)

    # ------------------------------------------------------------------
    # Status / revoke
    # ------------------------------------------------------------------

    def status(self, user_id: str, purpose: TokenPurpose) -> RateLimitStatus:
        """Current lock state, for flows that must refuse to re-issue while locked."""
        row = self._store.find_verification_token(user_id, TokenPurpose(purpose))
        if row is None:
            return RateLimitStatus(is_locked=False, minutes_remaining=0)
        now = self._clock()
        if row.locked_until is not None and row.locked_until <= now:
            return RateLimitStatus(is_locked=False, minutes_remaining=0)
        return check_rate_limit(row.attempts, row.locked_until, now, self.max_attempts, self.lock_minutes)

    def revoke(self, user_id: str, purpose: TokenPurpose) -> bool:
        """Drop any outstanding token (and its attempt state) for the pair."""
        return self._store.delete_verification_token(user_id, TokenPurpose(purpose))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _matches(self, row: VerificationToken, candidate: str) -> bool:
        if verify_secret(candidate, row.token_hash):
            return True
        if (
            row.purpose is TokenPurpose.EMAIL_VERIFICATION
            and row.display_code_hash
            and len(candidate) == DISPLAY_CODE_LENGTH
        ):
            return verify_password(candidate.upper(), row.display_code_hash)
        return False

    def _record_failure(self, user_id: str, purpose: TokenPurpose, now: datetime) -> None:
        lock_until = now + timedelta(minutes=self.lock_minutes)
        row = self._store.record_failed_attempt(user_id, purpose, self.max_attempts, lock_until)
        if row is not None and row.attempts == self.max_attempts:
            logger.warning(
                "Locked %s redemption for user %s after %d failed attempts",
                purpose.value,
                user_id,
                row.attempts,
            )


def _invalid() -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, "Invalid or expired token.", code=TOKEN_INVALID)


def _locked(minutes: int) -> AuthError:
    return AuthError(
        ErrorKind.RATE_LIMITED,
        f"Too many attempts. Try again in {minutes} minutes.",
        code=TOKEN_LOCKED,
        extra={"minutes_remaining": minutes},
    )

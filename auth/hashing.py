"""
auth/hashing.py -- One-way hashing for passwords and single-use tokens.

Two different constructions, on purpose:

  Passwords: bcrypt (salted, deliberately slow). Passwords are low-entropy
       secrets, so the cost factor is what makes an offline attack expensive.
       verify_password() runs against a dummy hash when there is no real one,
       so a login for an unknown email costs the same as a wrong password.

  Tokens: SHA-256, unsalted. Verification and reset tokens carry 256 bits of
       randomness, so a fast digest is safe, and being deterministic lets the
       store look a token up by its hash. verify_secret() compares the full
       fixed-length digests with hmac.compare_digest.

Password strength is a separate pure predicate that runs every rule and
reports all violations in a fixed order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable

import bcrypt

from core.errors import AuthError, ErrorKind

DEFAULT_BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes; longer inputs are rejected rather
# than silently truncated.
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

# ---------------------------------------------------------------------------
# Token digests (fast, deterministic)
# ---------------------------------------------------------------------------


def hash_secret(plaintext: str) -> str:
    """Return the SHA-256 hex digest of a high-entropy secret."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def verify_secret(plaintext: str, digest: str | None) -> bool:
    """Constant-time check of plaintext against a stored SHA-256 hex digest.

    Both sides are 64-char hex strings, so compare_digest always walks the
    full length. A missing or malformed digest never matches.
    """
    if not digest or not isinstance(plaintext, str):
        return False
    candidate = hash_secret(plaintext)
    if len(digest) != len(candidate):
        # Keep the work constant even for a corrupt stored value.
        hmac.compare_digest(candidate, candidate)
        return False
    return hmac.compare_digest(candidate.encode("ascii"), digest.encode("ascii", "replace"))


# ---------------------------------------------------------------------------
# Passwords (bcrypt)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise AuthError(
            ErrorKind.VALIDATION,
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes.",
            code="password_too_long",
        )
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a corrupt stored hash.
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("timing-equalization-dummy", rounds)


def burn_password_check(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
    """Spend one bcrypt verification on a dummy hash.

    Called on every login path that fails before reaching a real hash.
    """
    verify_password(plain, _dummy_hash(rounds))


# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------


@dataclass
class PasswordStrength:
    is_strong: bool
    errors: list[str] = field(default_factory=list)


_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

_RULES: tuple[tuple[str, Callable[[str], bool]], ...] = (
    (
        f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
        lambda p: len(p) >= MIN_PASSWORD_LENGTH,
    ),
    ("Password must contain at least one uppercase letter", lambda p: re.search(r"[A-Z]", p) is not None),
    ("Password must contain at least one lowercase letter", lambda p: re.search(r"[a-z]", p) is not None),
    ("Password must contain at least one number", lambda p: re.search(r"[0-9]", p) is not None),
    ("Password must contain at least one special character", lambda p: _SPECIAL_RE.search(p) is not None),
)


def check_password_strength(password: str) -> PasswordStrength:
    """Run every strength rule and collect all violations, in rule order.

    Not short-circuited: the caller can show every problem at once.
    """
    if not isinstance(password, str):
        password = ""
    errors = [message for message, rule in _RULES if not rule(password)]
    return PasswordStrength(is_strong=not errors, errors=errors)

"""
core/sanitizer.py -- Normalization of raw, untrusted strings.

Every function here is pure and total: it never raises, and anything that is
not a string (None, numbers, dicts from a sloppy JSON body) becomes "".
Control characters (ASCII 0-31 and 127) are stripped first for every kind,
then the kind-specific character class is applied.

This is a normalization layer in front of validation and storage. It does not
replace parameterized queries -- auth/store.py binds every value.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Callable

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RUN = re.compile(r"\s+")

_EMAIL_DISALLOWED = re.compile(r"[^a-z0-9+\-._@]")
# \w is unicode-aware in Python 3; underscore is removed separately.
_NAME_DISALLOWED = re.compile(r"[^\w\s\-']|_")
_ADDRESS_DISALLOWED = re.compile(r"[^\w\s\-.,#']|_")
_POSTAL_DISALLOWED = re.compile(r"[^A-Z0-9\s]")
_PHONE_DISALLOWED = re.compile(r"[^0-9 \-()+.]")

_EMAIL_FORMAT = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SanitizeKind(str, Enum):
    EMAIL = "email"
    NAME = "name"
    ADDRESS = "address"
    POSTAL_CODE = "postal_code"
    PHONE = "phone"
    PASSWORD = "password"
    TOKEN = "token"
    GENERIC = "generic"


def _strip_control(value: str) -> str:
    return _CONTROL_CHARS.sub("", value)


def _collapse(value: str) -> str:
    return _WHITESPACE_RUN.sub(" ", value).strip()


def sanitize_string(raw: Any) -> str:
    """Generic text: control characters stripped, surrounding whitespace trimmed."""
    if not isinstance(raw, str):
        return ""
    return _strip_control(raw).strip()


def sanitize_email(raw: Any) -> str:
    """Lowercase and keep only [a-z0-9+-._@].

    Plus-addressing survives: " USER+tag@Example.COM\\x07 " -> "user+tag@example.com".
    """
    if not isinstance(raw, str):
        return ""
    cleaned = _strip_control(raw.lower()).strip()
    return _EMAIL_DISALLOWED.sub("", cleaned)


def sanitize_password(raw: Any) -> str:
    """Strip control characters only. Spaces and punctuation are legal in passwords."""
    if not isinstance(raw, str):
        return ""
    return _strip_control(raw)


def sanitize_name(raw: Any) -> str:
    if not isinstance(raw, str):
        return ""
    cleaned = _strip_control(raw).strip()
    return _collapse(_NAME_DISALLOWED.sub("", cleaned))


def sanitize_address(raw: Any) -> str:
    if not isinstance(raw, str):
        return ""
    cleaned = _strip_control(raw).strip()
    return _collapse(_ADDRESS_DISALLOWED.sub("", cleaned))


def sanitize_postal_code(raw: Any) -> str:
    """Uppercase alphanumerics and single spaces, e.g. " m5h  2n2 " -> "M5H 2N2"."""
    if not isinstance(raw, str):
        return ""
    cleaned = _strip_control(raw).strip().upper()
    return _collapse(_POSTAL_DISALLOWED.sub("", cleaned))


def sanitize_phone(raw: Any) -> str:
    if not isinstance(raw, str):
        return ""
    cleaned = _strip_control(raw).strip()
    return _PHONE_DISALLOWED.sub("", cleaned)


def sanitize_token(raw: Any) -> str:
    """Tokens are hex today; strip control characters but do not over-restrict."""
    if not isinstance(raw, str):
        return ""
    return _strip_control(raw).strip()


_SANITIZERS: dict[SanitizeKind, Callable[[Any], str]] = {
    SanitizeKind.EMAIL: sanitize_email,
    SanitizeKind.NAME: sanitize_name,
    SanitizeKind.ADDRESS: sanitize_address,
    SanitizeKind.POSTAL_CODE: sanitize_postal_code,
    SanitizeKind.PHONE: sanitize_phone,
    SanitizeKind.PASSWORD: sanitize_password,
    SanitizeKind.TOKEN: sanitize_token,
    SanitizeKind.GENERIC: sanitize_string,
}


def sanitize(raw: Any, kind: SanitizeKind | str = SanitizeKind.GENERIC) -> str:
    """Dispatch to the sanitizer for kind. Unknown kinds fall back to generic."""
    try:
        kind = SanitizeKind(kind)
    except ValueError:
        kind = SanitizeKind.GENERIC
    return _SANITIZERS[kind](raw)


def sanitize_batch(data: dict, sanitizers: dict[str, SanitizeKind | str]) -> dict:
    """Sanitize selected string fields of a dict; everything else passes through.

    Usage:
        sanitize_batch(body, {"email": "email", "city": "name"})
    """
    result: dict = {}
    for key, value in data.items():
        if key in sanitizers and isinstance(value, str):
            result[key] = sanitize(value, sanitizers[key])
        else:
            result[key] = value
    return result


def is_valid_email(value: Any) -> bool:
    """Loose format check: something@something.tld with no whitespace."""
    return isinstance(value, str) and bool(_EMAIL_FORMAT.match(value))

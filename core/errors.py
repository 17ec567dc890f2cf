"""
core/errors.py -- Error kinds shared by every auth component.

One exception type, many kinds. Components raise AuthError tagged with an
ErrorKind; api/main.py maps each kind to a status code and the standard
{"error": {"code", "message"}} envelope in a single place.

The code field is a stable machine-readable identifier. It defaults to the
kind's own code but may be narrowed (e.g. "invalid_credentials" under
UNAUTHORIZED) where callers need to tell cases apart.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal_error"

    @property
    def status_code(self) -> int:
        return _STATUS[self]


_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DUPLICATE: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}

# Default user-safe messages, used when a component does not supply one.
DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Validation error.",
    ErrorKind.UNAUTHORIZED: "Authentication required.",
    ErrorKind.FORBIDDEN: "Forbidden.",
    ErrorKind.NOT_FOUND: "Resource not found.",
    ErrorKind.DUPLICATE: "Resource already exists.",
    ErrorKind.RATE_LIMITED: "Too many attempts.",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}


class AuthError(Exception):
    """A classified, user-safe failure.

    Attributes:
        kind:    ErrorKind -- decides the HTTP status at the boundary.
        code:    stable machine-readable code (defaults to kind.value).
        message: message safe to show to the client.
        extra:   optional structured detail (e.g. minutes_remaining).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        code: str | None = None,
        extra: dict | None = None,
    ) -> None:
        self.kind = kind
        self.code = code or kind.value
        self.message = message or DEFAULT_MESSAGES[kind]
        self.extra = extra or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.extra:
            body["detail"] = self.extra
        return body

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.name}, code={self.code!r}, message={self.message!r})"

"""
auth/guard.py -- Access policy checks and their FastAPI Depends() wrappers.

Identity comes from one place only: the Authorization: Bearer <token> header.

resolve_session() is the single, explicit "token -> identity" step. It never
raises for a bad token; it returns a SessionResult whose error field says why
there is no identity. Every failure reason (malformed, bad signature,
expired, unknown subject, deactivated profile) collapses into the same
generic "unauthorized" error, so a client cannot tell a tampered token from
an expired one. The specific reason is logged at DEBUG level only.

Persistence failures are not token failures: they propagate and become a 500
at the API boundary, even from optional_authenticated().

Dependency helpers:
  optional_authenticated()  -- SessionResult or None, never fails the request.
  require_authenticated()   -- 401 without a valid session.
  require_role(*roles)      -- 401, then 403 unless the stored profile role matches.
  require_email_verified()  -- 401, then 403 (email_not_verified).

The resolved subject id is attached as request.state.user_id.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Callable

from fastapi import Request

from auth.context import AuthContext
from auth.models import Role, SessionClaims, User, UserProfile
from core.errors import AuthError, ErrorKind

logger = logging.getLogger("authservice.auth.guard")

_BEARER_PREFIX = "Bearer "


@dataclass
class SessionResult:
    user: User | None = None
    profile: UserProfile | None = None
    claims: SessionClaims | None = None
    error: AuthError | None = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None and self.error is None

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user is not None else None


def _unauthorized() -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, "Authentication required.", code="unauthorized")


# ---------------------------------------------------------------------------
# Pure checks
# ---------------------------------------------------------------------------


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from an Authorization header value, or None."""
    if not header or not header.startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    return token or None


def resolve_session(ctx: AuthContext, token: str | None) -> SessionResult:
    """Verify a bearer token and load the identity it asserts."""
    if not token:
        return SessionResult(error=_unauthorized())
    try:
        claims = ctx.codec.verify(token)
    except AuthError as exc:
        logger.debug("Rejected bearer token (%s)", exc.code)
        return SessionResult(error=_unauthorized())

    user = ctx.store.find_user_by_id(claims.sub)
    if user is None:
        logger.debug("Token subject %s no longer exists", claims.sub)
        return SessionResult(claims=claims, error=_unauthorized())

    profile = ctx.store.find_profile_by_user_id(user.id)
    if profile is not None and not profile.is_active:
        logger.debug("Token subject %s is deactivated", user.id)
        return SessionResult(claims=claims, error=_unauthorized())

    return SessionResult(user=user, profile=profile, claims=claims)


def check_role(profile: UserProfile | None, allowed: Iterable[Role | str]) -> None:
    """Raise FORBIDDEN unless the stored profile role is in allowed."""
    allowed_values = {Role(r).value for r in allowed}
    if profile is None or Role(profile.role).value not in allowed_values:
        raise AuthError(ErrorKind.FORBIDDEN, "Forbidden.", code="forbidden")


def check_email_verified(user: User) -> None:
    if not user.email_verified:
        raise AuthError(ErrorKind.FORBIDDEN, "Email address not verified.", code="email_not_verified")


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def _session_from_request(request: Request) -> SessionResult:
    ctx: AuthContext = request.app.state.auth
    token = extract_bearer_token(request.headers.get("Authorization"))
    session = resolve_session(ctx, token)
    request.state.user_id = session.user_id if session.authenticated else None
    return session


def optional_authenticated(request: Request) -> SessionResult | None:
    """Soft variant: the identity if there is a valid one, else None."""
    session = _session_from_request(request)
    return session if session.authenticated else None


def require_authenticated(request: Request) -> SessionResult:
    """Require a valid bearer token. Raises AuthError(UNAUTHORIZED).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionResult = Depends(require_authenticated)): ...
    """
    session = _session_from_request(request)
    if not session.authenticated:
        raise session.error or _unauthorized()
    return session


def require_role(*allowed: Role | str) -> Callable[[Request], SessionResult]:
    """Build a dependency that admits only the given roles.

    Usage:
        @router.get("/admin/ping")
        async def ping(session: SessionResult = Depends(require_role(Role.ADMIN))): ...
    """
    allowed_roles = tuple(Role(r) for r in allowed)

    def dependency(request: Request) -> SessionResult:
        session = require_authenticated(request)
        check_role(session.profile, allowed_roles)
        return session

    return dependency


def require_email_verified(request: Request) -> SessionResult:
    session = require_authenticated(request)
    check_email_verified(session.user)
    return session

"""
tests/test_guard.py -- Unit tests for auth/guard.py.

Covers:
  - Bearer header parsing
  - resolve_session: every token failure is the same generic unauthorized
  - Deleted and deactivated users lose their sessions
  - check_role / check_email_verified
  - optional_authenticated / require_email_verified as request dependencies
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from starlette.requests import Request

from auth.guard import (
    check_email_verified,
    check_role,
    extract_bearer_token,
    optional_authenticated,
    require_email_verified,
    resolve_session,
)
from auth.models import Role, User, UserProfile
from auth.tokens import TokenCodec
from conftest import bearer, create_password_user, delete_user_row
from core.errors import AuthError, ErrorKind


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("Bearer   padded  ", "padded"),
        ("bearer abc", None),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_valid_token_resolves_user_and_profile(ctx):
    user = create_password_user(ctx.store, "guard@example.com", role=Role.EMPLOYEE)
    token = ctx.identity.issue_session(user).token
    session = resolve_session(ctx, token)
    assert session.authenticated is True
    assert session.user_id == user.id
    assert session.profile.role is Role.EMPLOYEE
    assert session.claims.sub == user.id


def _assert_generic_unauthorized(session) -> None:
    assert session.authenticated is False
    assert session.user is None
    assert session.error.kind is ErrorKind.UNAUTHORIZED
    assert session.error.code == "unauthorized"


def test_missing_token(ctx):
    _assert_generic_unauthorized(resolve_session(ctx, None))


def test_all_token_failures_look_the_same(ctx):
    user = create_password_user(ctx.store, "same@example.com")
    expired = ctx.codec.issue(user.id, ttl=-5)
    foreign = TokenCodec("another-secret-key-that-is-long-enough-xx").issue(user.id)
    for token in (expired, foreign, "garbage"):
        _assert_generic_unauthorized(resolve_session(ctx, token))


def test_token_for_deleted_user_is_rejected(ctx):
    user = create_password_user(ctx.store, "gone@example.com")
    token = ctx.identity.issue_session(user).token
    delete_user_row(ctx.store, user.id)
    _assert_generic_unauthorized(resolve_session(ctx, token))


def test_token_for_deactivated_user_is_rejected(ctx):
    user = create_password_user(ctx.store, "off@example.com")
    token = ctx.identity.issue_session(user).token
    profile = ctx.store.find_profile_by_user_id(user.id)
    profile.is_active = False
    ctx.store.upsert_profile(profile)
    _assert_generic_unauthorized(resolve_session(ctx, token))


def test_role_comes_from_store_not_token(ctx):
    """A demoted admin's old token still says admin; the stored profile decides."""
    user = create_password_user(ctx.store, "demoted@example.com", role=Role.ADMIN)
    token = ctx.identity.issue_session(user).token
    ctx.store.upsert_profile(UserProfile(user_id=user.id, role=Role.CUSTOMER))
    session = resolve_session(ctx, token)
    assert session.claims.role == "admin"
    with pytest.raises(AuthError) as exc_info:
        check_role(session.profile, [Role.ADMIN])
    assert exc_info.value.kind is ErrorKind.FORBIDDEN


def test_check_role_accepts_strings_and_enums():
    profile = UserProfile(user_id="u", role=Role.EMPLOYEE)
    check_role(profile, ["employee", Role.ADMIN])
    with pytest.raises(AuthError):
        check_role(profile, ["admin"])
    with pytest.raises(AuthError):
        check_role(None, [Role.CUSTOMER])


def test_check_email_verified():
    check_email_verified(User(id="u", email_verified=True))
    with pytest.raises(AuthError) as exc_info:
        check_email_verified(User(id="u", email_verified=False))
    assert exc_info.value.code == "email_not_verified"


def _request(ctx, headers: dict | None = None) -> Request:
    """A bare request whose app.state.auth is ctx, as the lifespan would set it."""
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": raw,
        "app": SimpleNamespace(state=SimpleNamespace(auth=ctx)),
    }
    return Request(scope)


def test_optional_authenticated_without_header(ctx):
    request = _request(ctx)
    assert optional_authenticated(request) is None
    assert request.state.user_id is None


def test_optional_authenticated_ignores_bad_token(ctx):
    request = _request(ctx, bearer("not-a-token"))
    assert optional_authenticated(request) is None
    assert request.state.user_id is None


def test_optional_authenticated_with_valid_token(ctx):
    user = create_password_user(ctx.store, "soft@example.com")
    token = ctx.identity.issue_session(user).token
    request = _request(ctx, bearer(token))
    session = optional_authenticated(request)
    assert session is not None
    assert session.user_id == user.id
    assert request.state.user_id == user.id


def test_require_email_verified_rejects_unverified_user(ctx):
    user = create_password_user(ctx.store, "unverified@example.com")
    token = ctx.identity.issue_session(user).token
    with pytest.raises(AuthError) as exc_info:
        require_email_verified(_request(ctx, bearer(token)))
    assert exc_info.value.kind is ErrorKind.FORBIDDEN
    assert exc_info.value.code == "email_not_verified"


def test_require_email_verified_admits_verified_user(ctx):
    user = create_password_user(ctx.store, "verified@example.com", verified=True)
    token = ctx.identity.issue_session(user).token
    session = require_email_verified(_request(ctx, bearer(token)))
    assert session.user_id == user.id


def test_require_email_verified_needs_a_session_first(ctx):
    with pytest.raises(AuthError) as exc_info:
        require_email_verified(_request(ctx))
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED

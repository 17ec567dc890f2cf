"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes:
  POST /api/v1/auth/register                  -- create a password user; sends verification email
  POST /api/v1/auth/sign-in                   -- password login; returns a bearer token
  POST /api/v1/auth/sign-out                  -- stateless acknowledgement
  GET  /api/v1/auth/user                      -- current user + profile (requires auth)
  PUT  /api/v1/auth/user                      -- update name/image/profile fields (requires auth)
  POST /api/v1/auth/change-password           -- requires auth and the current password
  POST /api/v1/auth/forgot-password           -- emails a reset link if the account exists
  POST /api/v1/auth/reset-password            -- redeems a reset token, sets a new password
  POST /api/v1/auth/verify-email              -- redeems a verification token or code
  POST /api/v1/auth/resend-verification-email -- issues a fresh verification token
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET  /api/v1/auth/google                    -- start Google sign-in
  GET  /api/v1/auth/google/callback           -- finish Google sign-in
  GET  /api/v1/auth/admin/ping                -- admin-only liveness check

Security:
  Sign-in, forgot-password, resend, reset-password and verify-email are
       rate-limited per IP (api/limiter.py).
  Sign-in returns one invalid_credentials error for every failure cause.
  Forgot-password and resend return the same message whether or not the
       email belongs to an account.
  Session-bearing responses carry Cache-Control: no-store.

Handlers only pick sanitizer kinds and map results; the rules live in auth/.
Sync handlers run in the threadpool. The OAuth handlers are async because
authlib's starlette client is.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import FORGOT_PASSWORD_LIMIT, RESEND_VERIFICATION_LIMIT, TOKEN_REDEMPTION_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignInRequest,
    UserResponse,
    UserUpdateRequest,
    VerifyEmailRequest,
)
from auth.context import AuthContext
from auth.guard import SessionResult, require_authenticated, require_role
from auth.identity import SessionGrant, require_strong_password
from auth.models import Role, TokenPurpose, User
from auth.notifications import normalize_language, notify_password_changed
from auth.oauth import GOOGLE, get_enabled_providers, google_callback_url, profile_from_google_token
from core.config import get_settings
from core.errors import AuthError, ErrorKind
from core.sanitizer import SanitizeKind, sanitize, sanitize_batch, sanitize_email, sanitize_password

logger = logging.getLogger("authservice.api.auth")

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."
RESEND_MESSAGE = "If that email needs verification, a new verification email has been sent."

_PROFILE_SANITIZERS = {
    "phone": SanitizeKind.PHONE,
    "address": SanitizeKind.ADDRESS,
    "postal_code": SanitizeKind.POSTAL_CODE,
    "city": SanitizeKind.NAME,
    "province": SanitizeKind.NAME,
    "country": SanitizeKind.NAME,
}

# Auth policy:
# - register, sign-in, sign-out, forgot/reset-password, verify-email,
#   resend-verification-email, providers, google, google/callback: public
# - GET/PUT user, change-password: require_authenticated
# - admin/ping: require_role(admin)
router = APIRouter()


def _ctx(request: Request) -> AuthContext:
    return request.app.state.auth


def _session_response(grant: SessionGrant) -> JSONResponse:
    resp = JSONResponse(
        content=SessionResponse(
            token=grant.token,
            expires_in=grant.expires_in,
            user=UserResponse.from_domain(grant.user, grant.profile),
        ).model_dump(mode="json")
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _send_verification(ctx: AuthContext, user: User) -> None:
    issued = ctx.tokens.issue(user.id, TokenPurpose.EMAIL_VERIFICATION)
    profile = ctx.store.find_profile_by_user_id(user.id)
    language = profile.preferred_language if profile is not None else None
    ctx.notifier.send_verification_email(
        user.email, issued.token, issued.display_code, user.name, language=normalize_language(language)
    )


# ---------------------------------------------------------------------------
# Registration and password sign-in
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a customer with a password account.

    The verification email is best-effort here: the account already exists,
    and the user can ask for another through resend-verification-email.
    """
    ctx = _ctx(request)
    user = ctx.identity.register_local(body.email, body.password, body.name, body.preferred_language)
    try:
        _send_verification(ctx, user)
    except AuthError:
        logger.warning("Verification email for new user %s could not be sent", user.id)
    profile = ctx.store.find_profile_by_user_id(user.id)
    return RegisterResponse(
        message="Registration successful. Please check your email to verify your account.",
        user=UserResponse.from_domain(user, profile),
    )


@limiter.limit(lambda: get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/sign-in", response_model=SessionResponse)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; return a bearer token."""
    grant = _ctx(request).identity.authenticate_local(body.email, body.password)
    logger.info("User %s signed in", grant.user.id)
    return _session_response(grant)


@router.post("/auth/sign-out", response_model=MessageResponse)
def sign_out() -> MessageResponse:
    """Sessions are stateless bearer tokens; the client discards its copy."""
    return MessageResponse(message="Signed out.")


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/auth/user", response_model=UserResponse)
def get_user(session: SessionResult = Depends(require_authenticated)) -> UserResponse:
    return UserResponse.from_domain(session.user, session.profile)


@router.put("/auth/user", response_model=UserResponse)
def update_user(
    request: Request,
    body: UserUpdateRequest,
    session: SessionResult = Depends(require_authenticated),
) -> UserResponse:
    """Update the caller's own name, avatar and profile fields.

    Role, employee type and active status are not client-writable.
    """
    ctx = _ctx(request)
    user_id = session.user.id
    supplied = body.model_dump(exclude_unset=True)

    user_fields = {}
    if "name" in supplied:
        user_fields["name"] = sanitize(supplied["name"], SanitizeKind.NAME) or None
    if "image" in supplied:
        user_fields["image"] = sanitize(supplied["image"], SanitizeKind.GENERIC) or None
    if user_fields:
        ctx.store.update_user(user_id, **user_fields)

    profile = session.profile or ctx.identity.ensure_profile(user_id)
    profile_updates = sanitize_batch(
        {k: v for k, v in supplied.items() if k in _PROFILE_SANITIZERS},
        _PROFILE_SANITIZERS,
    )
    for key, value in profile_updates.items():
        setattr(profile, key, value or None)
    if "preferred_language" in supplied:
        profile.preferred_language = normalize_language(supplied["preferred_language"])
    if profile_updates or "preferred_language" in supplied:
        profile = ctx.store.upsert_profile(profile)

    user = ctx.store.find_user_by_id(user_id)
    if user is None:
        raise AuthError(ErrorKind.NOT_FOUND, "User not found.", code="user_not_found")
    return UserResponse.from_domain(user, profile)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: SessionResult = Depends(require_authenticated),
) -> MessageResponse:
    """Change the password; any reset link issued before the change stops working."""
    ctx = _ctx(request)
    user = ctx.identity.change_password(session.user.id, body.current_password, body.new_password)
    ctx.tokens.revoke(user.id, TokenPurpose.PASSWORD_RESET)
    notify_password_changed(ctx.notifier, user.email, user.name)
    return MessageResponse(message="Password changed successfully.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(FORGOT_PASSWORD_LIMIT)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Issue a reset token and email the link.

    The response is identical for unknown and known addresses. A send failure
    for a real account is not hidden: the user would otherwise wait for an
    email that never comes.
    """
    ctx = _ctx(request)
    email = sanitize_email(body.email)
    user = ctx.store.find_user_by_email(email) if email else None
    if user is None:
        logger.info("Password reset requested for unknown address")
        return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)

    if ctx.tokens.status(user.id, TokenPurpose.PASSWORD_RESET).is_locked:
        logger.warning("Password reset for user %s skipped while redemption is locked", user.id)
        return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)

    issued = ctx.tokens.issue(user.id, TokenPurpose.PASSWORD_RESET)
    ctx.notifier.send_password_reset_email(user.email, issued.token, user.name)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@limiter.limit(TOKEN_REDEMPTION_LIMIT)
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Redeem a reset token and set the new password.

    Strength is checked before redemption so a rejected password does not
    burn the single-use token.
    """
    ctx = _ctx(request)
    new_password = sanitize_password(body.new_password)
    require_strong_password(new_password)

    user_id = ctx.tokens.redeem_link(TokenPurpose.PASSWORD_RESET, body.token)
    user = ctx.identity.set_password(user_id, new_password)
    notify_password_changed(ctx.notifier, user.email, user.name)
    return MessageResponse(message="Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@limiter.limit(TOKEN_REDEMPTION_LIMIT)
@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    """Redeem a verification token or display code.

    Unknown and already-verified addresses both get token_invalid, so the
    response only differs once the caller holds a token that matched.
    Redemption marks the user verified in the same transaction.
    """
    ctx = _ctx(request)
    email = sanitize_email(body.email)
    user = ctx.store.find_user_by_email(email) if email else None
    if user is None or user.email_verified:
        raise AuthError(ErrorKind.UNAUTHORIZED, "Invalid or expired token.", code="token_invalid")

    ctx.tokens.redeem(user.id, TokenPurpose.EMAIL_VERIFICATION, body.token)
    logger.info("Email verified for user %s", user.id)
    return MessageResponse(message="Email verified successfully.")


@limiter.limit(RESEND_VERIFICATION_LIMIT)
@router.post("/auth/resend-verification-email", response_model=MessageResponse)
def resend_verification_email(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    """Issue a fresh verification token unless the account is verified or locked.

    Unknown, verified and locked addresses all get the same response.
    """
    ctx = _ctx(request)
    email = sanitize_email(body.email)
    user = ctx.store.find_user_by_email(email) if email else None
    if user is None or user.email_verified:
        return MessageResponse(message=RESEND_MESSAGE)

    if ctx.tokens.status(user.id, TokenPurpose.EMAIL_VERIFICATION).is_locked:
        logger.warning("Verification resend for user %s skipped while redemption is locked", user.id)
        return MessageResponse(message=RESEND_MESSAGE)

    _send_verification(ctx, user)
    return MessageResponse(message=RESEND_MESSAGE)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Public endpoint -- the sign-in page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


def _google_client(request: Request):
    client = request.app.state.oauth.create_client(GOOGLE)
    if client is None:
        raise AuthError(ErrorKind.NOT_FOUND, "Google sign-in is not enabled.", code="provider_disabled")
    return client


@router.get("/auth/google")
async def google_login(request: Request):
    """Redirect to Google. authlib stores the state in the session cookie."""
    client = _google_client(request)
    return await client.authorize_redirect(request, google_callback_url(request.app.state.settings))


@router.get("/auth/google/callback")
async def google_callback(request: Request) -> RedirectResponse:
    """Exchange the code, resolve the identity and hand the session to the frontend.

    The token travels in the URL fragment, which browsers do not send to
    servers, so it stays out of access logs.
    """
    client = _google_client(request)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("Google OAuth exchange failed: %s", exc.error)
        raise AuthError(ErrorKind.UNAUTHORIZED, "Google sign-in failed.", code="oauth_failed") from exc

    ctx = _ctx(request)
    profile, provider_tokens = profile_from_google_token(token)
    user = await run_in_threadpool(ctx.identity.resolve_oauth, profile, provider_tokens)
    grant = await run_in_threadpool(ctx.identity.issue_session, user)
    resp = RedirectResponse(
        f"{ctx.frontend_base_url.rstrip('/')}/auth/callback#token={grant.token}",
        status_code=302,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Role-guarded
# ---------------------------------------------------------------------------


@router.get("/auth/admin/ping", response_model=MessageResponse)
def admin_ping(session: SessionResult = Depends(require_role(Role.ADMIN))) -> MessageResponse:
    return MessageResponse(message="pong")

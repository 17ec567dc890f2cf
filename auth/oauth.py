"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

build_oauth(settings) returns the authlib registry used by the /google routes.
A provider is registered only when both its client ID and secret are set;
otherwise a warning is logged and the provider is left out, so the login UI
(driven by get_enabled_providers) never offers a button that cannot work.

Security notes:
  OAuth state parameter (CSRF protection) is handled by authlib through
  Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback.

  profile_from_google_token() only passes the email on when the provider
  asserts email_verified. An unverified address could belong to someone else,
  and the Identity Resolver merges accounts by email. Without a verified
  email an already-linked identity still signs in; a new one is refused with
  missing_email.

Supported providers:
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile, ProviderTokens
from core.config import Settings
from core.errors import AuthError, ErrorKind

logger = logging.getLogger("authservice.auth.oauth")

GOOGLE = "google"
_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


def google_configured(settings: Settings) -> bool:
    return bool(settings.google_client_id and settings.google_client_secret)


def build_oauth(settings: Settings) -> OAuth:
    """Create the authlib registry for every configured provider."""
    oauth = OAuth()
    if google_configured(settings):
        oauth.register(
            name=GOOGLE,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=_GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    else:
        logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set; Google sign-in is disabled")
    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every configured provider.

    Used by GET /api/v1/auth/providers.
    """
    providers: list[dict] = []
    if google_configured(settings):
        providers.append({"name": GOOGLE, "label": "Google"})
    return providers


def google_callback_url(settings: Settings) -> str:
    return f"{settings.oauth_callback_base_url.rstrip('/')}/api/v1/auth/google/callback"


def profile_from_google_token(token: dict) -> tuple[OAuthProfile, ProviderTokens]:
    """Normalize authlib's Google token response for the Identity Resolver.

    Raises:
        AuthError(UNAUTHORIZED, oauth_failed): no userinfo or no sub claim.
    """
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("sub"):
        raise AuthError(ErrorKind.UNAUTHORIZED, "Google sign-in failed.", code="oauth_failed")

    email = userinfo.get("email")
    if email and not userinfo.get("email_verified", False):
        logger.warning("Google profile %s has an unverified email; ignoring it", userinfo["sub"])
        email = None

    profile = OAuthProfile(
        provider=GOOGLE,
        provider_account_id=str(userinfo["sub"]),
        email=email,
        display_name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
    )
    tokens = ProviderTokens(
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        id_token=token.get("id_token"),
        scope=token.get("scope"),
        token_type=token.get("token_type") or "Bearer",
    )
    return profile, tokens

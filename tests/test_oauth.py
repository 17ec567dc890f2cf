"""
tests/test_oauth.py -- Unit tests for auth/oauth.py.

Covers:
  - Google registered only when both credentials are configured
  - Google token response normalized into OAuthProfile + ProviderTokens
  - Unverified provider emails are dropped
"""

from __future__ import annotations

import pytest

from auth.oauth import build_oauth, get_enabled_providers, google_callback_url, profile_from_google_token
from core.config import Settings
from core.errors import AuthError

SECRET = "x" * 40


def _settings(**overrides) -> Settings:
    return Settings(secret_key=SECRET, _env_file=None, **overrides)


def test_google_disabled_without_credentials(caplog):
    settings = _settings(google_client_id="id-only", google_client_secret="")
    oauth = build_oauth(settings)
    assert oauth.create_client("google") is None
    assert get_enabled_providers(settings) == []
    assert "Google sign-in is disabled" in caplog.text


def test_google_enabled_with_credentials():
    settings = _settings(google_client_id="cid", google_client_secret="csecret")
    oauth = build_oauth(settings)
    assert oauth.create_client("google") is not None
    assert get_enabled_providers(settings) == [{"name": "google", "label": "Google"}]


def test_google_callback_url():
    settings = _settings(oauth_callback_base_url="https://api.example.com/")
    assert google_callback_url(settings) == "https://api.example.com/api/v1/auth/google/callback"


def test_profile_from_google_token():
    profile, tokens = profile_from_google_token(
        {
            "access_token": "at",
            "refresh_token": "rt",
            "id_token": "idt",
            "scope": "openid email profile",
            "token_type": "Bearer",
            "userinfo": {
                "sub": "1234567890",
                "email": "person@gmail.com",
                "email_verified": True,
                "name": "Person Example",
                "picture": "https://lh3.googleusercontent.com/p",
            },
        }
    )
    assert profile.provider == "google"
    assert profile.provider_account_id == "1234567890"
    assert profile.email == "person@gmail.com"
    assert profile.display_name == "Person Example"
    assert profile.avatar_url == "https://lh3.googleusercontent.com/p"
    assert tokens.access_token == "at"
    assert tokens.refresh_token == "rt"
    assert tokens.id_token == "idt"


def test_unverified_google_email_is_dropped():
    profile, _ = profile_from_google_token(
        {"userinfo": {"sub": "1", "email": "someone@gmail.com", "email_verified": False}}
    )
    assert profile.email is None


@pytest.mark.parametrize("token", [{}, {"userinfo": {}}, {"userinfo": {"email": "a@b.co"}}])
def test_token_without_subject_fails(token):
    with pytest.raises(AuthError) as exc_info:
        profile_from_google_token(token)
    assert exc_info.value.code == "oauth_failed"

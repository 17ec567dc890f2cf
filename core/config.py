"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call. Only the application assembly (api/main.py) calls it; every auth
      component receives the values it needs through its constructor, so
      nothing below api/ depends on process-wide state.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Enforces the signing-secret policy once, at
      startup, so a misconfigured process never serves a request.

Security notes:
  SECRET_KEY is mandatory and must be at least 32 characters. It signs every
  session token; a missing or short key is a fatal startup error, with no
  development-mode fallback.

  OAuth client credentials are optional. A provider with missing credentials
  is disabled with a warning (see auth/oauth.py).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authservice.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Everything except SECRET_KEY has a default so tests only need to provide
    the signing secret.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator rejects it.
    secret_key: str = ""
    database_url: str = "sqlite:///authservice.db"

    # ------------------------------------------------------------------
    # Sessions and single-use tokens
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 60 * 60 * 24 * 7  # 7 days
    verification_ttl_seconds: int = 2 * 60 * 60  # 2 hours
    max_verification_attempts: int = 5
    lockout_minutes: int = 15
    # bcrypt cost factor. Tests lower this to keep the suite fast.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Outbound links and email
    # ------------------------------------------------------------------

    frontend_base_url: str = "http://localhost:5173"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@example.com"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    oauth_callback_base_url: str = "http://localhost:3001"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Refuse to start without a usable signing secret.

        There is no generated fallback: a random per-process key would
        silently invalidate every issued session on restart.
        """
        if not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required. Set SECRET_KEY in your environment or .env file."
            )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()

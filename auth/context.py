"""
auth/context.py -- The explicit wiring object handed to every request.

AuthContext bundles the collaborators built from one Settings instance. The
FastAPI lifespan builds it once and stores it on app.state.auth; tests build
their own with in-memory stores and a fake notifier. No component reads
configuration from the environment on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.identity import IdentityResolver
from auth.notifications import LoggingNotifier, Notifier, SmtpConfig, SmtpNotifier
from auth.store import AuthStore
from auth.tokens import TokenCodec
from auth.verification import VerificationTokenManager
from core.config import Settings

logger = logging.getLogger("authservice.auth.context")


@dataclass
class AuthContext:
    store: AuthStore
    codec: TokenCodec
    tokens: VerificationTokenManager
    identity: IdentityResolver
    notifier: Notifier
    frontend_base_url: str


def build_notifier(settings: Settings) -> Notifier:
    if not settings.smtp_configured:
        logger.warning("SMTP_HOST not set; outbound email is disabled and only logged")
        return LoggingNotifier()
    return SmtpNotifier(
        SmtpConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
        ),
        frontend_base_url=settings.frontend_base_url,
        token_ttl_hours=max(1, settings.verification_ttl_seconds // 3600),
    )


def build_auth_context(
    settings: Settings,
    store: AuthStore | None = None,
    notifier: Notifier | None = None,
) -> AuthContext:
    """Assemble the collaborators from settings.

    store and notifier may be passed in (tests, alternative deployments);
    otherwise they are created from settings.database_url and the SMTP fields.
    """
    store = store or AuthStore(db_url=settings.database_url)
    codec = TokenCodec(settings.secret_key, default_ttl=settings.session_ttl_seconds)
    tokens = VerificationTokenManager(
        store,
        ttl_seconds=settings.verification_ttl_seconds,
        max_attempts=settings.max_verification_attempts,
        lock_minutes=settings.lockout_minutes,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    return AuthContext(
        store=store,
        codec=codec,
        tokens=tokens,
        identity=IdentityResolver(store, codec, bcrypt_rounds=settings.bcrypt_rounds),
        notifier=notifier or build_notifier(settings),
        frontend_base_url=settings.frontend_base_url,
    )

"""
auth/notifications.py -- Outbound account emails (reset, password changed, verify).

Two implementations of the Notifier protocol:

  SmtpNotifier    -- renders Jinja2 templates and sends through smtplib.
  LoggingNotifier -- used when SMTP_HOST is unset (local development). Logs
                     the masked recipient and the template name only.

Raw tokens are only ever placed into the outgoing message body. They are not
logged by either implementation, and recipients are masked in every log line.

Failures raise AuthError(INTERNAL, notification_failed). Whether that matters
is the caller's decision: the reset email blocks the reset flow, while the
password-changed confirmation is best-effort (see notify_password_changed).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import quote, urlencode

from jinja2 import DictLoader, Environment, select_autoescape

from core.errors import AuthError, ErrorKind

logger = logging.getLogger("authservice.auth.notifications")


SUPPORTED_LANGUAGES = ("en", "fr")
DEFAULT_LANGUAGE = "en"

_VERIFY_SUBJECTS = {
    "en": "Verify Your Email",
    "fr": "Vérifiez votre adresse e-mail",
}


def normalize_language(language: str | None) -> str:
    """Map any input onto a supported language code, defaulting to English."""
    value = (language or "").strip().lower()
    return value if value in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


def mask_email(email: str) -> str:
    """"jane.doe@example.com" -> "ja***@example.com"."""
    return re.sub(r"^(.{1,2})(.*)(@.*)$", r"\1***\3", email or "")


def reset_link(frontend_base_url: str, raw_token: str) -> str:
    return f"{frontend_base_url.rstrip('/')}/reset-password?{urlencode({'token': raw_token})}"


def verification_link(frontend_base_url: str, raw_token: str, email: str) -> str:
    query = urlencode({"token": raw_token, "email": email}, quote_via=quote)
    return f"{frontend_base_url.rstrip('/')}/auth/verify-email?{query}"


class Notifier(Protocol):
    def send_password_reset_email(self, email: str, raw_token: str, name: str | None = None) -> None: ...

    def send_password_changed_email(self, email: str, name: str | None = None) -> None: ...

    def send_verification_email(
        self,
        email: str,
        raw_token: str,
        display_code: str | None = None,
        name: str | None = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> None: ...


def notify_password_changed(notifier: Notifier, email: str | None, name: str | None = None) -> bool:
    """Best-effort confirmation. Failures are logged and swallowed."""
    if not email:
        return False
    try:
        notifier.send_password_changed_email(email, name)
    except Exception:
        logger.exception("Password-changed email to %s failed (ignored)", mask_email(email))
        return False
    return True


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_TEMPLATES = {
    "reset.txt": (
        "Hello {{ name or 'User' }},\n\n"
        "We received a request to reset the password for your account. If you did not\n"
        "make this request you can ignore this email; your password will not change.\n\n"
        "Reset your password: {{ link }}\n\n"
        "This link expires in {{ ttl_hours }} hours and can only be used once.\n"
    ),
    "reset.html": (
        "<p>Hello {{ name or 'User' }},</p>"
        "<p>We received a request to reset the password for your account. "
        "If you did not make this request you can ignore this email.</p>"
        '<p><a href="{{ link }}">Reset your password</a></p>'
        "<p>This link expires in {{ ttl_hours }} hours and can only be used once.</p>"
    ),
    "changed.txt": (
        "Hello {{ name or 'User' }},\n\n"
        "The password for your account was just changed. If this was you, no action\n"
        "is needed. If it was not, contact support immediately.\n"
    ),
    "changed.html": (
        "<p>Hello {{ name or 'User' }},</p>"
        "<p>The password for your account was just changed. If this was you, no action is needed.</p>"
        "<p><strong>Didn't make this change?</strong> Contact support immediately.</p>"
    ),
    "verify.txt": (
        "Hello {{ name or 'User' }},\n\n"
        "Please verify your email address.\n\n"
        "{% if display_code %}Your verification code: {{ display_code }}\n\n{% endif %}"
        "Or open this link: {{ link }}\n\n"
        "The code expires in {{ ttl_hours }} hours.\n"
    ),
    "verify.html": (
        "<p>Hello {{ name or 'User' }},</p>"
        "<p>Please verify your email address.</p>"
        "{% if display_code %}<p style=\"font-size:24px;letter-spacing:2px\"><strong>{{ display_code }}</strong></p>{% endif %}"
        '<p><a href="{{ link }}">Verify my email</a></p>'
        "<p>The code expires in {{ ttl_hours }} hours.</p>"
    ),
    "verify_fr.txt": (
        "Bonjour {{ name or 'Utilisateur' }},\n\n"
        "Veuillez vérifier votre adresse e-mail.\n\n"
        "{% if display_code %}Votre code de vérification : {{ display_code }}\n\n{% endif %}"
        "Ou ouvrez ce lien : {{ link }}\n\n"
        "Ce code expire dans {{ ttl_hours }} heures.\n"
    ),
    "verify_fr.html": (
        "<p>Bonjour {{ name or 'Utilisateur' }},</p>"
        "<p>Veuillez vérifier votre adresse e-mail.</p>"
        "{% if display_code %}<p style=\"font-size:24px;letter-spacing:2px\"><strong>{{ display_code }}</strong></p>{% endif %}"
        '<p><a href="{{ link }}">Vérifier mon adresse e-mail</a></p>'
        "<p>Ce code expire dans {{ ttl_hours }} heures.</p>"
    ),
}

_env = Environment(loader=DictLoader(_TEMPLATES), autoescape=select_autoescape(["html"]))


def render(template: str, **context) -> tuple[str, str]:
    """Return (text, html) bodies for a template family ("reset", "changed", "verify", "verify_fr")."""
    return (
        _env.get_template(f"{template}.txt").render(**context),
        _env.get_template(f"{template}.html").render(**context),
    )


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


@dataclass
class SmtpConfig:
    host: str
    port: int = 587
    user: str = ""
    password: str = ""
    sender: str = "noreply@example.com"
    timeout: float = 10.0


class SmtpNotifier:
    """Sends multipart (text + HTML) messages over SMTP with STARTTLS.

    Port 465 uses implicit TLS (SMTP_SSL); any other port upgrades with
    STARTTLS. Every send opens its own connection, so the notifier holds no
    shared mutable state between requests.
    """

    def __init__(self, config: SmtpConfig, frontend_base_url: str, token_ttl_hours: int = 2) -> None:
        self._config = config
        self._frontend_base_url = frontend_base_url
        self._ttl_hours = token_ttl_hours

    def send_password_reset_email(self, email: str, raw_token: str, name: str | None = None) -> None:
        text, html = render(
            "reset", name=name, link=reset_link(self._frontend_base_url, raw_token), ttl_hours=self._ttl_hours
        )
        self._send(email, "Password Reset Request", text, html)

    def send_password_changed_email(self, email: str, name: str | None = None) -> None:
        text, html = render("changed", name=name)
        self._send(email, "Password Changed Successfully", text, html)

    def send_verification_email(
        self,
        email: str,
        raw_token: str,
        display_code: str | None = None,
        name: str | None = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> None:
        language = normalize_language(language)
        text, html = render(
            "verify" if language == DEFAULT_LANGUAGE else f"verify_{language}",
            name=name,
            display_code=display_code,
            link=verification_link(self._frontend_base_url, raw_token, email),
            ttl_hours=self._ttl_hours,
        )
        self._send(email, _VERIFY_SUBJECTS[language], text, html)

    def _send(self, to: str, subject: str, text: str, html: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._config.sender
        msg["To"] = to
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        cfg = self._config
        try:
            if cfg.port == 465:
                server = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout)
            else:
                server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout)
            with server:
                if cfg.port != 465:
                    server.starttls()
                if cfg.user:
                    server.login(cfg.user, cfg.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email '%s' to %s failed: %s", subject, mask_email(to), exc)
            raise AuthError(ErrorKind.INTERNAL, code="notification_failed") from exc
        logger.info("Email '%s' sent to %s", subject, mask_email(to))


class LoggingNotifier:
    """Development stand-in for SMTP. Never logs token values."""

    def send_password_reset_email(self, email: str, raw_token: str, name: str | None = None) -> None:
        logger.warning("SMTP not configured; password reset email to %s not sent", mask_email(email))

    def send_password_changed_email(self, email: str, name: str | None = None) -> None:
        logger.warning("SMTP not configured; password changed email to %s not sent", mask_email(email))

    def send_verification_email(
        self,
        email: str,
        raw_token: str,
        display_code: str | None = None,
        name: str | None = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> None:
        logger.warning("SMTP not configured; verification email to %s not sent", mask_email(email))

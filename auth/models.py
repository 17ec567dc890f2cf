"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the token manager and the identity resolver do the work.

Timestamps are timezone-aware UTC datetimes in memory. auth/store.py converts
them to ISO 8601 strings on the way to the database and back.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Provider name for local email + password credentials. Local passwords are
# modelled as just another provider so one user can hold both kinds.
EMAIL_PROVIDER = "email"


class Role(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ADMIN = "admin"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    """The canonical identity record.

    email is nullable because an identity may exist before an address is
    known, but when set it is globally unique (enforced by a UNIQUE index).
    """

    id: str
    email: str | None = None
    name: str | None = None
    email_verified: bool = False
    email_verified_at: datetime | None = None
    image: str | None = None
    created_at: datetime | None = None


@dataclass
class UserProfile:
    """Exactly one per user. role is never absent; it defaults to customer.

    employee_type only carries meaning when role is EMPLOYEE.
    """

    user_id: str
    role: Role = Role.CUSTOMER
    employee_type: str | None = None
    is_active: bool = True
    phone: str | None = None
    address: str | None = None
    postal_code: str | None = None
    city: str | None = None
    province: str | None = None
    country: str | None = None
    preferred_language: str = "en"  # "en" or "fr"; picks the email language


@dataclass
class Account:
    """A credential or linked external identity belonging to one user.

    (provider, provider_account_id) is globally unique.

    password_hash is only set for provider "email" and holds a bcrypt hash.
    access_token / refresh_token / id_token are only set for OAuth providers
    and hold what the provider issued. The two kinds never share a field.
    """

    user_id: str
    provider: str
    provider_account_id: str
    id: str | None = None
    password_hash: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None
    token_type: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class VerificationToken:
    """Persisted half of a single-use token. One row per (user_id, purpose).

    Only hashes are stored. token_hash is None once the token is consumed;
    the row itself survives so the attempt counter and lock outlive the token.
    """

    user_id: str
    purpose: TokenPurpose
    token_hash: str | None = None
    display_code_hash: str | None = None
    expires_at: datetime | None = None
    attempts: int = 0
    locked_until: datetime | None = None


@dataclass
class SessionClaims:
    """Decoded session token payload. In transit only, never stored."""

    sub: str
    iat: datetime
    exp: datetime
    email: str | None = None
    role: str | None = None
    employee_type: str | None = None


@dataclass
class OAuthProfile:
    """Provider-neutral view of an external identity."""

    provider: str
    provider_account_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


@dataclass
class ProviderTokens:
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None
    token_type: str | None = "Bearer"


@dataclass
class NewUser:
    """Everything create_user() writes in one transaction."""

    user: User
    profile: UserProfile
    accounts: list[Account] = field(default_factory=list)

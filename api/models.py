"""
API request and response models for the AuthService REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models do only shape validation (types, presence, length caps).
Content rules -- sanitization, email format, password strength -- live in
core/sanitizer.py and auth/ so every entry point applies the same ones.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Role, User, UserProfile

# Generous upper bound on any single text field. Keeps oversized bodies away
# from bcrypt and the sanitizers.
_MAX_FIELD = 512


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=_MAX_FIELD)
    password: str = Field(max_length=_MAX_FIELD)
    name: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage", max_length=8)

    model_config = ConfigDict(populate_by_name=True)


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    email: str = Field(max_length=_MAX_FIELD)
    password: str = Field(max_length=_MAX_FIELD)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(alias="currentPassword", max_length=_MAX_FIELD)
    new_password: str = Field(alias="newPassword", max_length=_MAX_FIELD)

    model_config = ConfigDict(populate_by_name=True)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(max_length=_MAX_FIELD)


class ResetPasswordRequest(BaseModel):
    token: str = Field(max_length=_MAX_FIELD)
    new_password: str = Field(alias="newPassword", max_length=_MAX_FIELD)

    model_config = ConfigDict(populate_by_name=True)


class VerifyEmailRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-email.

    token is either the full link token or the 8-character code shown in the
    email. The email identifies whose token is being redeemed.
    """

    email: str = Field(max_length=_MAX_FIELD)
    token: str = Field(max_length=_MAX_FIELD)


class ResendVerificationRequest(BaseModel):
    email: str = Field(max_length=_MAX_FIELD)


class UserUpdateRequest(BaseModel):
    """Request body for PUT /api/v1/auth/user. Every field is optional."""

    name: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    image: Optional[str] = Field(default=None, max_length=2048)
    phone: Optional[str] = Field(default=None, max_length=64)
    address: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    postal_code: Optional[str] = Field(default=None, alias="postalCode", max_length=32)
    city: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    province: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    country: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage", max_length=8)

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user plus the profile fields clients need.

    Never includes credentials, provider tokens or verification state beyond
    the email_verified flag.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False
    role: str = "customer"
    employee_type: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    preferred_language: str = "en"
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User, profile: Optional[UserProfile]) -> "UserResponse":
        data = {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "image": user.image,
            "email_verified": user.email_verified,
            "created_at": user.created_at,
        }
        if profile is not None:
            data.update(
                role=Role(profile.role).value,
                employee_type=profile.employee_type,
                phone=profile.phone,
                address=profile.address,
                postal_code=profile.postal_code,
                city=profile.city,
                province=profile.province,
                country=profile.country,
                preferred_language=profile.preferred_language,
            )
        return cls(**data)


class SessionResponse(BaseModel):
    """Response for POST /sign-in and the OAuth callback (JSON mode)."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class MessageResponse(BaseModel):
    """Generic acknowledgement for flows whose outcome must not be revealed."""

    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[dict | list | str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

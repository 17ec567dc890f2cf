"""
auth/identity.py -- Resolve credentials and external profiles to one canonical user.

OAuth resolution (resolve_oauth) runs the same four steps for every provider:

  1. (provider, provider_account_id) already linked -> refresh the stored
     provider tokens and return that user. An existing link always wins; the
     email is not consulted.
  2. No usable email on the profile -> AuthError(VALIDATION, missing_email).
  3. A user already owns the email -> link a new Account to that user, mark
     the email verified (the provider vouched for it), attach the avatar.
  4. Otherwise create User + UserProfile(customer) + Account in one
     transaction.

Races: two first-time logins for the same identity can both reach step 4.
The store's unique indexes make the second insert fail with DUPLICATE; the
loser re-reads and falls through to step 1 or step 3 instead of erroring.

Local login (authenticate_local) returns the same invalid_credentials error
for an unknown email, a wrong password, a user with no password account and a
deactivated profile. A dummy bcrypt check keeps the timing of the no-hash
paths in line with a real comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.hashing import (
    DEFAULT_BCRYPT_ROUNDS,
    burn_password_check,
    check_password_strength,
    hash_password,
    verify_password,
)
from auth.models import (
    EMAIL_PROVIDER,
    Account,
    NewUser,
    OAuthProfile,
    ProviderTokens,
    Role,
    User,
    UserProfile,
)
from auth.notifications import normalize_language
from auth.store import AuthStore, utcnow
from auth.tokens import TokenCodec
from core.errors import AuthError, ErrorKind
from core.sanitizer import is_valid_email, sanitize_email, sanitize_name, sanitize_password

logger = logging.getLogger("authservice.auth.identity")

INVALID_CREDENTIALS = "invalid_credentials"
_INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
FALLBACK_DISPLAY_NAME = "User"


@dataclass
class SessionGrant:
    token: str
    user: User
    profile: UserProfile
    expires_in: int


def require_strong_password(password: str) -> None:
    """Raise AuthError(VALIDATION, weak_password) listing every violated rule."""
    strength = check_password_strength(password)
    if not strength.is_strong:
        raise AuthError(
            ErrorKind.VALIDATION,
            "Password does not meet the strength requirements.",
            code="weak_password",
            extra={"errors": strength.errors},
        )


def display_name_for(profile: OAuthProfile, email: str) -> str:
    """Profile name, else the email's local part, else a generic label."""
    name = sanitize_name(profile.display_name or "")
    if name:
        return name
    local_part = email.split("@", 1)[0] if email else ""
    return local_part or FALLBACK_DISPLAY_NAME


class IdentityResolver:
    """Maps local credentials and OAuth profiles to exactly one User."""

    def __init__(self, store: AuthStore, codec: TokenCodec, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
        self._store = store
        self._codec = codec
        self._bcrypt_rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def resolve_oauth(self, profile: OAuthProfile, tokens: ProviderTokens | None = None) -> User:
        tokens = tokens or ProviderTokens()

        existing = self._existing_link(profile, tokens)
        if existing is not None:
            return existing

        email = sanitize_email(profile.email or "")
        if not email or not is_valid_email(email):
            raise AuthError(
                ErrorKind.VALIDATION,
                f"No email address in the {profile.provider} profile.",
                code="missing_email",
            )

        user = self._store.find_user_by_email(email)
        if user is not None:
            return self._link(user, profile, tokens)

        try:
            created = self._store.create_user(
                NewUser(
                    user=User(
                        id="",
                        email=email,
                        name=display_name_for(profile, email),
                        email_verified=True,
                        email_verified_at=utcnow(),
                        image=profile.avatar_url,
                    ),
                    profile=UserProfile(user_id="", role=Role.CUSTOMER),
                    accounts=[_oauth_account(profile, tokens)],
                )
            )
        except AuthError as exc:
            if exc.kind is not ErrorKind.DUPLICATE:
                raise
            # Lost a creation race. Whoever won either linked this identity
            # or created the user for this email; resolve against that.
            logger.info("Concurrent first login for %s identity; falling back to link path", profile.provider)
            existing = self._existing_link(profile, tokens)
            if existing is not None:
                return existing
            user = self._store.find_user_by_email(email)
            if user is None:
                raise
            return self._link(user, profile, tokens)

        logger.info("Created user %s from %s login", created.id, profile.provider)
        return created

    def _existing_link(self, profile: OAuthProfile, tokens: ProviderTokens) -> User | None:
        account = self._store.find_account_by_provider_and_id(profile.provider, profile.provider_account_id)
        if account is None:
            return None
        refreshed = {
            k: v
            for k, v in (
                ("access_token", tokens.access_token),
                ("refresh_token", tokens.refresh_token),
                ("id_token", tokens.id_token),
            )
            if v is not None
        }
        if refreshed:
            self._store.update_account(account.id, **refreshed)
        user = self._store.find_user_by_id(account.user_id)
        if user is None:
            raise AuthError(ErrorKind.INTERNAL, code="orphaned_account")
        return user

    def _link(self, user: User, profile: OAuthProfile, tokens: ProviderTokens) -> User:
        """Attach a new provider Account to an existing user (account merge).

        The account, the verified flag and the avatar are written together;
        a failure leaves no link behind, so a retry takes this path again.
        """
        account = _oauth_account(profile, tokens)
        account.user_id = user.id
        try:
            self._store.link_account(account, mark_verified=True, image=profile.avatar_url)
        except AuthError as exc:
            if exc.kind is not ErrorKind.DUPLICATE:
                raise
            winner = self._store.find_account_by_provider_and_id(profile.provider, profile.provider_account_id)
            if winner is None:
                raise
            # Linked concurrently; the committed link carries its own user update.
            return self._existing_link(profile, tokens) or user

        logger.info("Linked %s identity to existing user %s", profile.provider, user.id)
        return self._store.find_user_by_id(user.id) or user

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    def authenticate_local(self, email: str, password: str) -> SessionGrant:
        email = sanitize_email(email)
        password = sanitize_password(password)

        user = self._store.find_user_by_email(email) if email else None
        account = self._store.find_account_for_user(user.id, EMAIL_PROVIDER) if user else None
        if user is None or account is None or not account.password_hash:
            burn_password_check(password, self._bcrypt_rounds)
            raise _invalid_credentials()
        if not verify_password(password, account.password_hash):
            raise _invalid_credentials()

        profile = self.ensure_profile(user.id)
        if not profile.is_active:
            raise _invalid_credentials()
        return self.issue_session(user, profile)

    def register_local(
        self, email: str, password: str, name: str | None = None, language: str | None = None
    ) -> User:
        """Create a password user. Raises VALIDATION or DUPLICATE."""
        email = sanitize_email(email)
        if not is_valid_email(email):
            raise AuthError(ErrorKind.VALIDATION, "Invalid email address.", code="invalid_email")
        password = sanitize_password(password)
        require_strong_password(password)

        if self._store.find_user_by_email(email) is not None:
            raise AuthError(ErrorKind.DUPLICATE, "User already exists.", code="user_exists")

        try:
            user = self._store.create_user(
                NewUser(
                    user=User(id="", email=email, name=sanitize_name(name or "") or None),
                    profile=UserProfile(user_id="", role=Role.CUSTOMER, preferred_language=normalize_language(language)),
                    accounts=[
                        Account(
                            user_id="",
                            provider=EMAIL_PROVIDER,
                            provider_account_id=email,
                            password_hash=hash_password(password, self._bcrypt_rounds),
                        )
                    ],
                )
            )
        except AuthError as exc:
            if exc.kind is ErrorKind.DUPLICATE:
                raise AuthError(ErrorKind.DUPLICATE, "User already exists.", code="user_exists") from exc
            raise
        logger.info("Registered local user %s", user.id)
        return user

    def change_password(self, user_id: str, old_password: str, new_password: str) -> User:
        """Verify the current password, then store a new hash. Returns the user."""
        user = self._store.find_user_by_id(user_id)
        account = self._store.find_account_for_user(user_id, EMAIL_PROVIDER) if user else None
        if user is None or account is None or not verify_password(sanitize_password(old_password), account.password_hash):
            raise AuthError(ErrorKind.UNAUTHORIZED, "Invalid current password.", code="invalid_current_password")
        new_password = sanitize_password(new_password)
        require_strong_password(new_password)
        self._store.update_account(account.id, password_hash=hash_password(new_password, self._bcrypt_rounds))
        logger.info("Password changed for user %s", user_id)
        return user

    def set_password(self, user_id: str, new_password: str) -> User:
        """Store a new password without the old one (reset flow).

        Users who so far only signed in through OAuth get an "email" account.
        """
        new_password = sanitize_password(new_password)
        require_strong_password(new_password)
        user = self._store.find_user_by_id(user_id)
        if user is None:
            raise AuthError(ErrorKind.NOT_FOUND, "User not found.", code="user_not_found")
        password_hash = hash_password(new_password, self._bcrypt_rounds)
        account = self._store.find_account_for_user(user_id, EMAIL_PROVIDER)
        if account is not None:
            self._store.update_account(account.id, password_hash=password_hash)
        else:
            self._store.create_account(
                Account(
                    user_id=user_id,
                    provider=EMAIL_PROVIDER,
                    provider_account_id=user.email or user_id,
                    password_hash=password_hash,
                )
            )
        logger.info("Password reset for user %s", user_id)
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def ensure_profile(self, user_id: str) -> UserProfile:
        """Return the user's profile, writing the default one if it is missing."""
        profile = self._store.find_profile_by_user_id(user_id)
        if profile is None:
            logger.warning("User %s had no profile; creating default customer profile", user_id)
            profile = self._store.upsert_profile(UserProfile(user_id=user_id, role=Role.CUSTOMER))
        return profile

    def issue_session(self, user: User, profile: UserProfile | None = None) -> SessionGrant:
        profile = profile or self.ensure_profile(user.id)
        token = self._codec.issue(
            user.id,
            {"email": user.email, "role": Role(profile.role).value, "employeeType": profile.employee_type},
        )
        return SessionGrant(token=token, user=user, profile=profile, expires_in=self._codec.default_ttl)


def _oauth_account(profile: OAuthProfile, tokens: ProviderTokens) -> Account:
    return Account(
        user_id="",
        provider=profile.provider,
        provider_account_id=profile.provider_account_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        id_token=tokens.id_token,
        scope=tokens.scope,
        token_type=tokens.token_type,
    )


def _invalid_credentials() -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, _INVALID_CREDENTIALS_MESSAGE, code=INVALID_CREDENTIALS)

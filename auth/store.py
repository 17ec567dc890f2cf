"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly, and every
operation is a by-key lookup or write.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity (the only shared mutable state in the service lives here):
  create_user()              -- user + profile + accounts in one transaction.
                                A duplicate email or provider identity raises
                                AuthError(DUPLICATE) and writes nothing.
  link_account()             -- new provider account + verified flag / avatar
                                on the owning user, in one transaction.
  consume_verification_token -- compare-and-swap: clears the hash only WHERE
                                it still equals the hash the caller verified
                                and has not expired. rowcount tells the caller
                                whether it won. Consuming an email-verification
                                token marks the user verified in the same
                                transaction.
  record_failed_attempt()    -- one UPDATE increments the counter and sets
                                locked_until when the threshold is crossed, so
                                concurrent failures cannot lose increments.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(YYYY-MM-DDTHH:MM:SS.ffffff+00:00) so string comparison in SQL matches
chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    Account,
    NewUser,
    Role,
    TokenPurpose,
    User,
    UserProfile,
    VerificationToken,
)
from core.errors import AuthError, ErrorKind

logger = logging.getLogger("authservice.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), unique=True),  # NULL allowed until an address is known
    Column("name", String(255)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verified_at", String(32)),
    Column("image", Text),
    Column("created_at", String(32), nullable=False),
)

_profiles = Table(
    "user_profiles",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role", String(20), nullable=False, server_default=Role.CUSTOMER.value),
    Column("employee_type", String(50)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("phone", String(50)),
    Column("address", Text),
    Column("postal_code", String(20)),
    Column("city", String(100)),
    Column("province", String(100)),
    Column("country", String(100)),
    Column("preferred_language", String(5), nullable=False, server_default="en"),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("password_hash", Text),  # bcrypt, provider "email" only
    Column("access_token", Text),  # provider-issued, OAuth only
    Column("refresh_token", Text),
    Column("id_token", Text),
    Column("scope", String(255)),
    Column("token_type", String(30)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_identity"),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("token_hash", String(64), index=True),  # SHA-256 hex; NULL once consumed
    Column("display_code_hash", Text),  # bcrypt of the short display code
    Column("expires_at", String(32)),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    PrimaryKeyConstraint("user_id", "purpose"),
)


# ---------------------------------------------------------------------------
# Connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """WAL for concurrent readers; foreign_keys so ON DELETE CASCADE applies.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_id() -> str:
    return str(uuid.uuid4())


# Columns update_user() / update_account() accept. Anything else is a bug in
# the caller and fails loudly.
_USER_UPDATABLE = {"email", "name", "email_verified", "email_verified_at", "image"}
_ACCOUNT_UPDATABLE = {"password_hash", "access_token", "refresh_token", "id_token", "scope", "token_type"}
_DATETIME_FIELDS = {"email_verified_at", "expires_at", "locked_until"}


def _prepare(fields: dict, allowed: set[str]) -> dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")
    values: dict = {}
    for key, value in fields.items():
        if key in _DATETIME_FIELDS:
            value = to_iso(value)
        elif isinstance(value, bool):
            value = 1 if value else 0
        values[key] = value
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, UserProfile, Account and VerificationToken rows.

    Usage:
        store = AuthStore("sqlite:///authservice.db")
        user = store.create_user(NewUser(user=User(id="", email="a@b.co"), profile=UserProfile(user_id="")))
        store.find_user_by_email("a@b.co")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(_users.select().limit(1)).fetchall()
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, new: NewUser) -> User:
        """Insert a user, its profile and any accounts in one transaction.

        Ids left empty are generated here and written back onto the passed
        dataclasses. Raises AuthError(DUPLICATE) if the email or any
        (provider, provider_account_id) pair already exists; in that case
        nothing is written.
        """
        user = new.user
        user.id = user.id or _new_id()
        user.created_at = user.created_at or utcnow()
        new.profile.user_id = user.id
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user.id,
                        email=user.email,
                        name=user.name,
                        email_verified=1 if user.email_verified else 0,
                        email_verified_at=to_iso(user.email_verified_at),
                        image=user.image,
                        created_at=to_iso(user.created_at),
                    )
                )
                conn.execute(_profiles.insert().values(**_profile_values(new.profile)))
                for account in new.accounts:
                    account.user_id = user.id
                    self._insert_account(conn, account)
        except IntegrityError as exc:
            raise AuthError(ErrorKind.DUPLICATE, "User already exists.", code="duplicate_user") from exc
        return user

    def find_user_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email(self, email: str) -> User | None:
        """Exact match. Callers pass a sanitized (lowercased) address."""
        if not email:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable user columns. Returns True if a row was updated."""
        values = _prepare(fields, _USER_UPDATABLE)
        if not values:
            return False
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        except IntegrityError as exc:
            raise AuthError(ErrorKind.DUPLICATE, "Email already in use.", code="duplicate_email") from exc
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def find_profile_by_user_id(self, user_id: str) -> UserProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def upsert_profile(self, profile: UserProfile) -> UserProfile:
        """Write the whole profile, inserting it if the user has none yet."""
        values = _profile_values(profile)
        with self.engine.begin() as conn:
            result = conn.execute(
                _profiles.update().where(_profiles.c.user_id == profile.user_id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_profiles.insert().values(**values))
        return profile

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_account_by_provider_and_id(self, provider: str, provider_account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_account_for_user(self, user_id: str, provider: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where((_accounts.c.user_id == user_id) & (_accounts.c.provider == provider))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def create_account(self, account: Account) -> Account:
        """Insert one account. Raises AuthError(DUPLICATE) if the provider identity is taken."""
        return self.link_account(account)

    def link_account(self, account: Account, mark_verified: bool = False, image: str | None = None) -> Account:
        """Insert an account and update its owning user in one transaction.

        mark_verified sets email_verified (and its timestamp) unless the user
        is already verified; image replaces the avatar when given. If either
        write fails, neither is kept. Raises AuthError(DUPLICATE) if the
        provider identity is taken.
        """
        values: dict = {}
        if image:
            values["image"] = image
        try:
            with self.engine.begin() as conn:
                self._insert_account(conn, account)
                if mark_verified:
                    conn.execute(
                        _users.update()
                        .where((_users.c.id == account.user_id) & (_users.c.email_verified == 0))
                        .values(email_verified=1, email_verified_at=to_iso(utcnow()))
                    )
                if values:
                    conn.execute(_users.update().where(_users.c.id == account.user_id).values(**values))
        except IntegrityError as exc:
            raise AuthError(ErrorKind.DUPLICATE, "Account already linked.", code="duplicate_account") from exc
        return account

    def update_account(self, account_id: str, **fields) -> bool:
        values = _prepare(fields, _ACCOUNT_UPDATABLE)
        values["updated_at"] = to_iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        return result.rowcount > 0

    def _insert_account(self, conn: Connection, account: Account) -> None:
        now = utcnow()
        account.id = account.id or _new_id()
        account.created_at = account.created_at or now
        account.updated_at = now
        conn.execute(
            _accounts.insert().values(
                id=account.id,
                user_id=account.user_id,
                provider=account.provider,
                provider_account_id=account.provider_account_id,
                password_hash=account.password_hash,
                access_token=account.access_token,
                refresh_token=account.refresh_token,
                id_token=account.id_token,
                scope=account.scope,
                token_type=account.token_type,
                created_at=to_iso(account.created_at),
                updated_at=to_iso(account.updated_at),
            )
        )

    # ------------------------------------------------------------------
    # Verification / reset tokens
    # ------------------------------------------------------------------

    def upsert_verification_token(self, token: VerificationToken) -> None:
        """Replace the (user, purpose) row. Issuing a new token resets attempts and lock."""
        values = {
            "token_hash": token.token_hash,
            "display_code_hash": token.display_code_hash,
            "expires_at": to_iso(token.expires_at),
            "attempts": token.attempts,
            "locked_until": to_iso(token.locked_until),
        }
        key = (_verification_tokens.c.user_id == token.user_id) & (
            _verification_tokens.c.purpose == TokenPurpose(token.purpose).value
        )
        with self.engine.begin() as conn:
            result = conn.execute(_verification_tokens.update().where(key).values(**values))
            if result.rowcount == 0:
                conn.execute(
                    _verification_tokens.insert().values(
                        user_id=token.user_id, purpose=TokenPurpose(token.purpose).value, **values
                    )
                )

    def find_verification_token(self, user_id: str, purpose: TokenPurpose) -> VerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(
                    (_verification_tokens.c.user_id == user_id)
                    & (_verification_tokens.c.purpose == TokenPurpose(purpose).value)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_verification_token_by_hash(self, purpose: TokenPurpose, token_hash: str) -> VerificationToken | None:
        """O(1) lookup for link flows where the raw token is the only state carried."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(
                    (_verification_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_verification_tokens.c.token_hash == token_hash)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume_verification_token(
        self, user_id: str, purpose: TokenPurpose, expected_hash: str, now: datetime
    ) -> bool:
        """Compare-and-swap consumption. Returns True for exactly one caller.

        The WHERE clause re-checks the hash the caller verified and the expiry,
        so two concurrent redemptions of the same token cannot both succeed
        and a token cannot be consumed after it expired between read and write.
        Counters and lock are reset in the same statement.

        For EMAIL_VERIFICATION the user's email_verified flag is set in the
        same transaction, so a consumed token always means a verified user.
        """
        purpose = TokenPurpose(purpose)
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where(
                    (_verification_tokens.c.user_id == user_id)
                    & (_verification_tokens.c.purpose == purpose.value)
                    & (_verification_tokens.c.token_hash == expected_hash)
                    & (_verification_tokens.c.expires_at > to_iso(now))
                )
                .values(
                    token_hash=None,
                    display_code_hash=None,
                    expires_at=None,
                    attempts=0,
                    locked_until=None,
                )
            )
            won = result.rowcount == 1
            if won and purpose is TokenPurpose.EMAIL_VERIFICATION:
                conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.email_verified == 0))
                    .values(email_verified=1, email_verified_at=to_iso(now))
                )
        return won

    def record_failed_attempt(
        self, user_id: str, purpose: TokenPurpose, max_attempts: int, lock_until: datetime
    ) -> VerificationToken | None:
        """Atomically increment attempts; lock when the new count reaches max_attempts.

        SQL evaluates every SET expression against the pre-update row, so
        `attempts + 1` in the CASE is the same value being written.
        """
        key = (_verification_tokens.c.user_id == user_id) & (
            _verification_tokens.c.purpose == TokenPurpose(purpose).value
        )
        attempts = _verification_tokens.c.attempts
        with self.engine.begin() as conn:
            conn.execute(
                _verification_tokens.update()
                .where(key)
                .values(
                    attempts=attempts + 1,
                    locked_until=case(
                        (attempts + 1 >= max_attempts, to_iso(lock_until)),
                        else_=_verification_tokens.c.locked_until,
                    ),
                )
            )
            row = conn.execute(_verification_tokens.select().where(key)).fetchone()
        return _row_to_token(row) if row is not None else None

    def clear_expired_lock(self, user_id: str, purpose: TokenPurpose, now: datetime) -> bool:
        """Reset attempts once a lock window has passed. Only the first caller wins."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where(
                    (_verification_tokens.c.user_id == user_id)
                    & (_verification_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_verification_tokens.c.locked_until.is_not(None))
                    & (_verification_tokens.c.locked_until <= to_iso(now))
                )
                .values(attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def delete_verification_token(self, user_id: str, purpose: TokenPurpose) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.user_id == user_id)
                    & (_verification_tokens.c.purpose == TokenPurpose(purpose).value)
                )
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _profile_values(profile: UserProfile) -> dict:
    return {
        "user_id": profile.user_id,
        "role": Role(profile.role).value,
        "employee_type": profile.employee_type,
        "is_active": 1 if profile.is_active else 0,
        "phone": profile.phone,
        "address": profile.address,
        "postal_code": profile.postal_code,
        "city": profile.city,
        "province": profile.province,
        "country": profile.country,
        "preferred_language": profile.preferred_language or "en",
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        email_verified=bool(row.email_verified),
        email_verified_at=from_iso(row.email_verified_at),
        image=row.image,
        created_at=from_iso(row.created_at),
    )


def _row_to_profile(row) -> UserProfile:
    return UserProfile(
        user_id=row.user_id,
        role=Role(row.role),
        employee_type=row.employee_type,
        is_active=bool(row.is_active),
        phone=row.phone,
        address=row.address,
        postal_code=row.postal_code,
        city=row.city,
        province=row.province,
        country=row.country,
        preferred_language=row.preferred_language,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        password_hash=row.password_hash,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        id_token=row.id_token,
        scope=row.scope,
        token_type=row.token_type,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_token(row) -> VerificationToken:
    return VerificationToken(
        user_id=row.user_id,
        purpose=TokenPurpose(row.purpose),
        token_hash=row.token_hash,
        display_code_hash=row.display_code_hash,
        expires_at=from_iso(row.expires_at),
        attempts=row.attempts,
        locked_until=from_iso(row.locked_until),
    )

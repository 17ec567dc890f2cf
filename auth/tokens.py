"""
auth/tokens.py -- Session token codec (signed JWTs).

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id), optional email /
       role / employeeType snapshots, iat and exp. Validity is purely a
       function of signature and expiry -- there is no server-side session
       table and no revocation list.

  Failure reasons: verify() distinguishes malformed, bad-signature and
       expired tokens through AuthError.code so logs and tests can tell them
       apart. All three share ErrorKind.UNAUTHORIZED, and the access guard
       collapses them into one generic "unauthorized" before anything reaches
       a client.

  Expiry is checked against wall-clock time with zero leeway. Clock skew
       between issuers is not compensated for.

  SECRET_KEY is constructor state. The codec never reads settings itself;
       api/main.py builds it from the validated Settings object.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import SessionClaims
from core.errors import AuthError, ErrorKind

logger = logging.getLogger("authservice.auth.tokens")

_ALGORITHM = "HS256"

TOKEN_MALFORMED = "token_malformed"
TOKEN_INVALID_SIGNATURE = "token_invalid_signature"
TOKEN_EXPIRED = "token_expired"

# Optional claims copied through issue()/verify(). Wire name -> attribute name.
_OPTIONAL_CLAIMS = {"email": "email", "role": "role", "employeeType": "employee_type"}


class TokenCodec:
    """Signs and verifies compact session tokens.

    Usage:
        codec = TokenCodec(secret_key=settings.secret_key, default_ttl=3600)
        token = codec.issue(user.id, {"email": user.email, "role": "customer"})
        claims = codec.verify(token)   # SessionClaims, or raises AuthError
    """

    def __init__(self, secret_key: str, default_ttl: int = 3600, algorithm: str = _ALGORITHM) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a non-empty secret key.")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.default_ttl = default_ttl

    def issue(self, subject_id: str, claims: dict | None = None, ttl: int | None = None) -> str:
        """Encode a signed JWT for subject_id.

        Args:
            subject_id: Opaque user id, stored as the sub claim.
            claims:     Optional snapshot keys: email, role, employeeType.
                        None values are dropped; unknown keys are ignored.
            ttl:        Lifetime in seconds. Defaults to the codec's default_ttl.
        """
        now = datetime.now(timezone.utc)
        lifetime = self.default_ttl if ttl is None else ttl
        payload: dict = {
            "sub": str(subject_id),
            "iat": now,
            "exp": now + timedelta(seconds=lifetime),
        }
        for wire_name in _OPTIONAL_CLAIMS:
            value = (claims or {}).get(wire_name)
            if value is not None:
                payload[wire_name] = value
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> SessionClaims:
        """Decode and verify a JWT.

        Raises:
            AuthError(UNAUTHORIZED) with code token_malformed,
            token_invalid_signature or token_expired.
        """
        if not token or not isinstance(token, str):
            raise AuthError(ErrorKind.UNAUTHORIZED, "Malformed token.", code=TOKEN_MALFORMED)

        # Structure first, so a garbage string is not reported as a bad signature.
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Malformed token.", code=TOKEN_MALFORMED) from exc

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Token expired.", code=TOKEN_EXPIRED) from exc
        except JWTError as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Invalid token signature.", code=TOKEN_INVALID_SIGNATURE) from exc

        return _payload_to_claims(payload)


def _payload_to_claims(payload: dict) -> SessionClaims:
    sub = payload.get("sub")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not sub or not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        raise AuthError(ErrorKind.UNAUTHORIZED, "Malformed token.", code=TOKEN_MALFORMED)
    extra = {attr: payload.get(wire) for wire, attr in _OPTIONAL_CLAIMS.items()}
    return SessionClaims(
        sub=str(sub),
        iat=datetime.fromtimestamp(iat, tz=timezone.utc),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc),
        **extra,
    )

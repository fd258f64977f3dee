"""Bearer credential verification.

Credentials are HMAC-signed JWTs carrying ``sub``, ``role``, ``iat`` and
``exp`` claims. Issuance belongs to an external identity service;
:meth:`TokenAuthenticator.issue` exists for tooling and tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, get_args

import jwt

import db
from schemas import IdentityContext, Role

logger = logging.getLogger(__name__)

_ROLES = frozenset(get_args(Role))


class AuthError(Exception):
    """Base class for rejected credentials."""

    kind = "invalid"

    def __init__(self, message: str, *, subject_id: Optional[str] = None):
        super().__init__(message)
        self.subject_id = subject_id


class InvalidCredential(AuthError):
    kind = "invalid"


class ExpiredCredential(AuthError):
    kind = "expired"


class RevokedCredential(AuthError):
    kind = "revoked"


FailureListener = Callable[[AuthError, Optional[str]], None]


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


class TokenAuthenticator:
    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        leeway: int = 0,
        default_ttl: int = 3600,
        is_revoked: Optional[Callable[[str], bool]] = None,
        failure_listener: Optional[FailureListener] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not secret:
            raise ValueError("secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._leeway = leeway
        self._default_ttl = default_ttl
        self._is_revoked = is_revoked or db.is_subject_revoked
        self._failure_listener = failure_listener
        self._clock = clock

    def issue(self, subject_id: str, role: str = "student", ttl_seconds: Optional[int] = None,
              issued_at: Optional[datetime] = None) -> str:
        if role not in _ROLES:
            raise ValueError(f"unknown role: {role}")
        iat = issued_at or self._clock()
        exp = iat + timedelta(seconds=self._default_ttl if ttl_seconds is None else ttl_seconds)
        payload = {
            "sub": subject_id,
            "role": role,
            "iat": int(iat.timestamp()),
            "exp": int(exp.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def authenticate(self, credential: Optional[str], source: Optional[str] = None) -> IdentityContext:
        """Verify ``credential`` and return the caller's identity.

        Raises InvalidCredential, ExpiredCredential or RevokedCredential. Each
        failure is handed to the failure listener before being raised.
        """
        try:
            return self._verify(credential)
        except AuthError as exc:
            self._report(exc, source)
            raise

    def _verify(self, credential: Optional[str]) -> IdentityContext:
        if not credential or not isinstance(credential, str):
            raise InvalidCredential("missing credential")
        now = self._clock()
        try:
            claims = jwt.decode(
                credential,
                self._secret,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["sub", "iat", "exp"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidCredential(f"malformed credential: {exc}", subject_id=_claimed_subject(credential)) from None

        subject_id = claims.get("sub")
        role = claims.get("role")
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidCredential("credential has no subject")
        if role not in _ROLES:
            raise InvalidCredential(f"credential has unknown role: {role!r}", subject_id=subject_id)
        try:
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise InvalidCredential("credential has non-numeric time claims", subject_id=subject_id) from None

        # Checked against the injected clock rather than PyJWT's wall clock.
        skew = timedelta(seconds=self._leeway)
        if issued_at - skew > now:
            raise ExpiredCredential("credential issued in the future", subject_id=subject_id)
        if expires_at + skew <= now:
            raise ExpiredCredential("credential expired", subject_id=subject_id)
        if self._is_revoked(subject_id):
            raise RevokedCredential("subject has been revoked", subject_id=subject_id)

        return IdentityContext(
            subject_id=subject_id,
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _report(self, exc: AuthError, source: Optional[str]) -> None:
        logger.info("Authentication failed (%s) from %s: %s", exc.kind, source or "unknown", exc)
        if self._failure_listener is None:
            return
        try:
            self._failure_listener(exc, source)
        except Exception:
            logger.error("Auth failure listener raised", exc_info=True)


def _claimed_subject(credential: str) -> Optional[str]:
    """Best-effort read of an unverified ``sub`` claim, for alert details only."""
    try:
        claims = jwt.decode(credential, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) else None

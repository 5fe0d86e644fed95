"""
auth/tokens.py -- Access/refresh token issuance and verification, cookie helpers.

Security design decisions:
  JWT: python-jose with HS512. Two token types share one signing key and are
       told apart by the "type" claim:
         ACCESS  -- short TTL (15 min), audience-bound, authorizes requests.
         REFRESH -- long TTL (7 days), used only to mint a new token pair.
       Each validator accepts exactly one type, so a refresh token presented
       as an access token (or the reverse) is rejected [type confusion].

  Claim minimization: access tokens carry the employee id (sub), department,
       sales person code and device fingerprint. Never name or email -- a
       leaked token (logs, browser storage) must not leak PII. Profile data
       lives in the SessionStore and is read from there.

  Failure mode: every verification path returns False/None on any failure
       (bad signature, malformed, expired, wrong type, wrong issuer). Nothing
       raises to the caller except issuance without a signing key, which is a
       configuration error (SigningError), never a per-request condition.

  SECRET_KEY: sourced from core.config Settings. The Settings class refuses to
       start in production without a key of at least 32 characters;
       TokenAuthority re-checks at issue time so an empty key can never sign.

Layer rule: imports only core/ and auth/ siblings.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from auth.errors import SigningError
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.models import Session

logger = logging.getLogger("staffauth.tokens")

_ALGORITHM = "HS512"

TOKEN_TYPE_ACCESS = "ACCESS"
TOKEN_TYPE_REFRESH = "REFRESH"

ACCESS_COOKIE_NAME = "X-AUTH-TOKEN"
REFRESH_COOKIE_NAME = "X-REFRESH-TOKEN"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_preview(token: str | None) -> str:
    """Short, log-safe prefix of a token. Full tokens never go to logs."""
    if not token:
        return "<none>"
    return f"{token[:12]}..."


class TokenAuthority:
    """Stateless issuer/verifier for access and refresh tokens.

    Holds only configuration (signing key, issuer, audience, TTLs). Safe to
    share across threads.

    Usage:
        authority = TokenAuthority(get_settings())
        access = authority.issue_access_token(42, 7, "SLP-1", fingerprint)
        authority.validate_access_token(access)  # True
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] | None = None) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _signing_key(self) -> str:
        key = self._settings.secret_key
        if not key or not key.strip():
            logger.critical("Refusing to sign token: SECRET_KEY is not configured")
            raise SigningError("SECRET_KEY is not configured; tokens cannot be signed.")
        return key

    def _encode(self, claims: dict, ttl_seconds: int) -> str:
        key = self._signing_key()
        now = self._clock()
        claims.update(
            {
                "iss": self._settings.jwt_issuer,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + timedelta(seconds=ttl_seconds),
            }
        )
        try:
            return jwt.encode(claims, key, algorithm=_ALGORITHM)
        except JWTError as exc:
            raise SigningError(f"Token could not be signed: {exc}") from exc

    def issue_access_token(
        self,
        employee_id: int,
        department_code: int | None,
        sales_person_code: str | None,
        device_fingerprint: str,
    ) -> str:
        """Sign a short-lived ACCESS token. Email and name are never accepted here."""
        claims = {
            "type": TOKEN_TYPE_ACCESS,
            "sub": str(employee_id),
            "aud": self._settings.jwt_audience,
            "department": department_code,
            "sales_person_code": sales_person_code,
            "device_fingerprint": device_fingerprint,
        }
        return self._encode(claims, self._settings.access_token_ttl_seconds)

    def issue_refresh_token(self, employee_id: int, device_fingerprint: str) -> str:
        """Sign a long-lived REFRESH token bound to the device fingerprint."""
        claims = {
            "type": TOKEN_TYPE_REFRESH,
            "sub": str(employee_id),
            "employee_code": employee_id,
            "device_fingerprint": device_fingerprint,
        }
        token = self._encode(claims, self._settings.refresh_token_ttl_seconds)
        logger.info("Refresh token issued for employee %s", employee_id)
        return token

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _decode(self, token: str | None, expected_type: str) -> dict | None:
        """Verify token fully and return its claims, or None on any failure."""
        key = self._settings.secret_key
        if not token or not key:
            return None
        try:
            if expected_type == TOKEN_TYPE_ACCESS:
                claims = jwt.decode(
                    token,
                    key,
                    algorithms=[_ALGORITHM],
                    audience=self._settings.jwt_audience,
                    issuer=self._settings.jwt_issuer,
                )
            else:
                claims = jwt.decode(
                    token,
                    key,
                    algorithms=[_ALGORITHM],
                    issuer=self._settings.jwt_issuer,
                    options={"verify_aud": False},
                )
        except ExpiredSignatureError:
            logger.info("%s token expired", expected_type.lower())
            return None
        except JWTClaimsError as exc:
            logger.warning("%s token rejected (claims): %s", expected_type.lower(), exc)
            return None
        except JWTError as exc:
            logger.warning("%s token rejected: %s", expected_type.lower(), exc)
            return None

        if claims.get("type") != expected_type:
            logger.warning("Token rejected: type is %r, expected %s", claims.get("type"), expected_type)
            return None
        return claims

    def validate_access_token(self, token: str | None) -> bool:
        return self._decode(token, TOKEN_TYPE_ACCESS) is not None

    def validate_refresh_token(self, token: str | None) -> bool:
        return self._decode(token, TOKEN_TYPE_REFRESH) is not None

    def decode_refresh_token(self, token: str | None) -> dict | None:
        """Claims of a valid refresh token (employee_code, device_fingerprint, ...), else None."""
        return self._decode(token, TOKEN_TYPE_REFRESH)

    def extract_employee_id(self, token: str | None) -> int | None:
        """Employee id from the sub claim of a correctly signed, unexpired token."""
        key = self._settings.secret_key
        if not token or not key:
            return None
        try:
            claims = jwt.decode(token, key, algorithms=[_ALGORITHM], options={"verify_aud": False})
            return int(claims["sub"])
        except (JWTError, KeyError, TypeError, ValueError):
            return None

    def is_near_expiry(self, token: str | None, threshold_seconds: float | None = None) -> bool:
        """True if the token expires within threshold_seconds.

        Unparseable tokens, and tokens without a usable exp claim, report
        True: the caller should attempt a refresh
        rather than carry on silently. The signature is still verified so a
        forged token cannot steer refresh behaviour.
        """
        if threshold_seconds is None:
            threshold_seconds = self._settings.refresh_threshold_seconds
        key = self._settings.secret_key
        if not token or not key:
            return True
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError:
            return True
        exp = claims.get("exp")
        try:
            remaining = float(exp) - self._clock().timestamp()
        except (TypeError, ValueError):
            return True
        return remaining < threshold_seconds


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, session: Session, settings: Settings | None = None) -> None:
    """Write the session's access and refresh tokens as cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: HTTPS only unless SECURE_COOKIES=false (local development).
    max_age: matches each token's TTL so cookie and token expire together.
    """
    settings = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        value=session.access_token,
        max_age=settings.access_token_ttl_seconds,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=session.refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def clear_auth_cookies(response, settings: Settings | None = None) -> None:
    """Overwrite both auth cookies with empty, immediately-expiring values."""
    settings = settings or get_settings()
    for name in (ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME):
        response.set_cookie(
            name,
            value="",
            max_age=0,
            path="/",
            httponly=True,
            samesite="strict",
            secure=settings.secure_cookies,
        )

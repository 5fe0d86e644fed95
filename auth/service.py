"""
auth/service.py -- AuthService: login, validation, refresh rotation, logout.

Pattern: Facade / orchestrator. AuthService owns no state of its own; it
coordinates the collaborators injected at construction:

    TokenAuthority     signs and verifies tokens        (auth/tokens.py)
    SessionStore       live sessions + blacklist        (auth/sessions.py)
    LoginRateLimiter   per-IP failed-login counter      (auth/ratelimit.py)
    IdentityAuthority  external credential check        (auth/identity.py)
    AuditSink          LOGIN / LOGOUT trail             (auth/audit.py)

Login pipeline:
    RATE_CHECK -> CREDENTIAL_CHECK -> PERMISSION_CHECK -> FINGERPRINT_BIND
    -> TOKEN_ISSUE -> SESSION_COMMIT -> AUDIT
A blocked IP fails at RATE_CHECK without reaching the authority. Every failed
CREDENTIAL_CHECK or PERMISSION_CHECK records exactly one failed attempt.

Security notes:
  Refresh tokens are single-use. A successful refresh blacklists the old
  access and refresh tokens before the new pair is returned, so a stolen
  refresh token replayed after the legitimate client has rotated is rejected.
  Revoked refresh tokens stay blacklisted for the full refresh token lifetime,
  and only the session currently holding a refresh token may redeem it.

  Logout is logout-everywhere: every session of the employee ends, on every
  device, and all of their tokens are blacklisted.

  Audit sink failures are logged and never fail a login or logout.

Layer rule: imports only core/ and auth/ siblings. No FastAPI here.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone

from auth.audit import SUBJECT_AUTH, WINDOW_AUTH, AuditAction, AuditSink
from auth.errors import (
    FingerprintMismatchError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoActiveSessionError,
    PermissionDeniedError,
    RateLimitedError,
)
from auth.fingerprint import UNKNOWN_USER_AGENT, derive_fingerprint, fingerprints_match
from auth.identity import IdentityAuthority, IdentityAuthorityError, IdentityResult
from auth.models import Session
from auth.ratelimit import LoginRateLimiter
from auth.sessions import SessionStore
from auth.tokens import TokenAuthority, token_preview
from core.config import Settings, get_settings

logger = logging.getLogger("staffauth.service")

UNKNOWN_IP = "0.0.0.0 (desconocida)"


def normalize_ip_address(ip: str | None) -> str:
    """Canonical form of a client address for rate limiting and audit.

    Missing or unspecified addresses collapse to one "unknown" bucket, and
    loopback addresses are tagged so audit readers can tell local traffic apart.
    """
    if ip is None or not ip.strip():
        return UNKNOWN_IP
    ip = ip.strip()
    if ip == "0.0.0.0" or ip == "::" or "0:0:0:0" in ip:
        return UNKNOWN_IP
    if ip == "127.0.0.1":
        return "127.0.0.1 (localhost)"
    if ip == "::1":
        return "::1 (localhost)"
    return ip


class AuthService:
    """Authentication and session lifecycle for employees.

    Usage:
        service = AuthService(tokens, sessions, rate_limiter, identity, audit)
        session = service.login("jdoe", "secret", "10.0.0.5", "Mozilla/5.0")
        service.validate(session.access_token)      # True
        session = service.refresh(session.refresh_token)
        service.logout(session.access_token)        # 1
    """

    def __init__(
        self,
        tokens: TokenAuthority,
        sessions: SessionStore,
        rate_limiter: LoginRateLimiter,
        identity: IdentityAuthority,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.identity = identity
        self.audit = audit
        self._settings = settings or get_settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        client_ip: str | None,
        user_agent: str | None = UNKNOWN_USER_AGENT,
    ) -> Session:
        """Authenticate against the identity authority and open a session.

        client_ip is the raw caller address; it is bound into the device
        fingerprint as-is and normalized for rate limiting and audit.

        Raises:
            RateLimitedError: the caller's IP is currently blocked.
            InvalidCredentialsError: rejected credentials or authority failure.
            PermissionDeniedError: valid credentials, no access to the system.
            SigningError: no signing key is configured.
        """
        ip = normalize_ip_address(client_ip)

        if self.rate_limiter.is_blocked(ip):
            retry_after = self.rate_limiter.retry_after(ip)
            logger.warning("Login for %s refused: %s is blocked for %ds", username, ip, retry_after)
            raise RateLimitedError(retry_after=retry_after, detail={"retry_after": retry_after})

        result = self._check_credentials(username, password, ip)

        if not result.has_access:
            self._record_failure(ip)
            logger.warning("Login for %s from %s denied: no access to the system", username, ip)
            raise PermissionDeniedError()

        fingerprint = derive_fingerprint((client_ip or "").strip(), user_agent or UNKNOWN_USER_AGENT)
        employee_id = result.employee_id
        department_code = result.department_code or 0

        access_token = self.tokens.issue_access_token(
            employee_id, department_code, result.sales_person_code, fingerprint
        )
        refresh_token = self.tokens.issue_refresh_token(employee_id, fingerprint)

        session = Session(
            employee_id=employee_id,
            access_token=access_token,
            refresh_token=refresh_token,
            device_fingerprint=fingerprint,
            department_code=department_code,
            email=result.email,
            sales_person_code=result.sales_person_code,
            name=result.name,
            client_ip=ip,
        )
        self.sessions.put(session)
        self.rate_limiter.clear_attempts(ip)

        logger.info("Employee %s logged in from %s", employee_id, ip)
        self._emit_audit(
            employee_id,
            AuditAction.LOGIN,
            new_value=f"Login successful from {ip}",
            origin=ip,
        )
        return session

    def _check_credentials(self, username: str, password: str, ip: str) -> IdentityResult:
        try:
            result = self.identity.authenticate(username, password)
        except IdentityAuthorityError as exc:
            self._record_failure(ip)
            logger.warning("Login for %s from %s failed: identity authority error: %s", username, ip, exc)
            raise InvalidCredentialsError() from exc
        except Exception as exc:
            self._record_failure(ip)
            logger.exception("Login for %s from %s failed: unexpected identity authority error", username, ip)
            raise InvalidCredentialsError() from exc

        if not result.authenticated:
            self._record_failure(ip)
            logger.warning(
                "Login for %s from %s failed: status=%s message=%s",
                username,
                ip,
                result.status,
                result.message,
            )
            raise InvalidCredentialsError()

        if result.employee_id is None:
            self._record_failure(ip)
            logger.error("Identity authority accepted %s but returned no employee id", username)
            raise InvalidCredentialsError()
        return result

    def _record_failure(self, ip: str) -> None:
        if self.rate_limiter.record_failed_attempt(ip):
            logger.warning("Too many failed logins from %s; blocked", ip)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, access_token: str | None) -> bool:
        """True iff the token is unrevoked, cryptographically valid, and backs a live session."""
        if not access_token:
            return False
        self.sessions.sweep_expired_blacklist(self._settings.blacklist_retention_seconds)
        if self.sessions.is_blacklisted(access_token):
            logger.debug("Rejected blacklisted token %s", token_preview(access_token))
            return False
        if not self.tokens.validate_access_token(access_token):
            return False
        session = self.sessions.get(access_token)
        return session is not None and session.active

    def get_session(self, access_token: str | None) -> Session | None:
        if not self.validate(access_token):
            return None
        return self.sessions.get(access_token)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None) -> Session:
        """Redeem a refresh token for a new access/refresh pair.

        The session keeps its profile attributes and device binding; only the
        tokens change. Both superseded tokens are blacklisted.

        Raises:
            InvalidTokenError: token missing, malformed, expired, wrong type or already redeemed.
            NoActiveSessionError: the employee has no live session.
            FingerprintMismatchError: the token was bound to a different device.
        """
        if not refresh_token or self.sessions.is_blacklisted(refresh_token):
            logger.warning("Refresh refused: token %s is missing or revoked", token_preview(refresh_token))
            raise InvalidTokenError()

        claims = self.tokens.decode_refresh_token(refresh_token)
        if claims is None:
            raise InvalidTokenError()
        try:
            employee_id = int(claims["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError() from exc
        token_fingerprint = claims.get("device_fingerprint")

        session = self._session_for_refresh(employee_id, refresh_token)
        if session is None:
            current = self.sessions.find_by_employee_id(employee_id, device_fingerprint=token_fingerprint)
            if current is not None:
                if not fingerprints_match(current.device_fingerprint, token_fingerprint):
                    logger.warning("Refresh refused: device mismatch for employee %s", employee_id)
                    raise FingerprintMismatchError()
                logger.warning(
                    "Refresh refused: token %s is not the current refresh token for employee %s",
                    token_preview(refresh_token),
                    employee_id,
                )
                raise InvalidTokenError()
            logger.warning("Refresh refused: employee %s has no active session", employee_id)
            raise NoActiveSessionError()

        if not fingerprints_match(session.device_fingerprint, token_fingerprint):
            logger.warning("Refresh refused: device mismatch for employee %s", employee_id)
            raise FingerprintMismatchError()

        new_access = self.tokens.issue_access_token(
            employee_id,
            session.department_code,
            session.sales_person_code,
            session.device_fingerprint,
        )
        new_refresh = self.tokens.issue_refresh_token(employee_id, session.device_fingerprint)
        renewed = dataclasses.replace(
            session,
            access_token=new_access,
            refresh_token=new_refresh,
            last_refreshed_at=datetime.now(timezone.utc),
            active=True,
        )
        if not self.sessions.rotate(session, renewed, self._settings.refresh_token_ttl_seconds):
            logger.warning("Refresh refused: session of employee %s ended during rotation", employee_id)
            raise NoActiveSessionError()
        logger.info("Tokens rotated for employee %s", employee_id)
        return renewed

    def _session_for_refresh(self, employee_id: int, refresh_token: str) -> Session | None:
        # Only the session currently holding this exact refresh token may redeem it.
        for session in self.sessions.sessions_for_employee(employee_id):
            if session.refresh_token == refresh_token:
                return session
        return None

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, access_token: str | None, client_ip: str | None = None) -> int:
        """End every session of the token's employee. Returns how many sessions ended.

        Raises NoActiveSessionError if access_token does not back a live session.
        """
        session = self.sessions.get(access_token) if access_token else None
        if session is None or not session.active:
            raise NoActiveSessionError()

        terminated = self.sessions.invalidate_all_for_employee(
            session.employee_id, refresh_hold_seconds=self._settings.refresh_token_ttl_seconds
        )
        count = len(terminated)
        origin = normalize_ip_address(client_ip) if client_ip else (session.client_ip or UNKNOWN_IP)

        logger.info("Employee %s logged out (%d session(s))", session.employee_id, count)
        self._emit_audit(
            session.employee_id,
            AuditAction.LOGOUT,
            new_value=f"logout (all devices - {count} sessions)",
            origin=origin,
        )
        return count

    # ------------------------------------------------------------------
    # Device policy
    # ------------------------------------------------------------------

    def check_device(self, session: Session, current_fingerprint: str | None) -> bool:
        """Apply the configured device-binding policy to a request.

        Returns True when the request may proceed. Under BLOCK a mismatch
        raises FingerprintMismatchError instead of returning False.
        """
        if not self._settings.device_validation_enabled:
            return True
        if fingerprints_match(session.device_fingerprint, current_fingerprint):
            return True
        if self._settings.device_mismatch_action == "BLOCK":
            logger.warning("Blocked request for employee %s: device mismatch", session.employee_id)
            raise FingerprintMismatchError()
        logger.warning("Device mismatch for employee %s (action=WARN)", session.employee_id)
        return True

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _emit_audit(self, employee_id: int, action: AuditAction, new_value: str, origin: str) -> None:
        try:
            self.audit.record(
                employee_id=employee_id,
                action=action,
                subject_type=SUBJECT_AUTH,
                subject_id=str(employee_id),
                previous_value="",
                new_value=new_value,
                origin=origin,
                window_id=WINDOW_AUTH,
            )
        except Exception:
            logger.exception("Audit sink failed for %s of employee %s", action.value, employee_id)

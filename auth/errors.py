"""
auth/errors.py -- Exception vocabulary surfaced by the auth service.

Each class carries an HTTP status_code and a stable error_code so the API
layer can map any AuthError to a response without inspecting the type.
InvalidTokenError deliberately covers malformed, expired, blacklisted and
wrong-type tokens alike: callers never learn which check failed.

SigningError is not part of the caller vocabulary. It signals a fatal
configuration problem (no signing key) and is left to the generic 500 handler.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth failures mapped to HTTP responses."""

    status_code: int = 401
    error_code: str = "unauthorized"
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, detail: dict | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}


class RateLimitedError(AuthError):
    """Too many failed login attempts from the caller's IP (429)."""

    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many failed attempts. Try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 0, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class InvalidCredentialsError(AuthError):
    status_code = 401
    error_code = "bad_credentials"
    default_message = "Invalid username or password."


class PermissionDeniedError(AuthError):
    """Credentials were accepted but the employee has no access to the system (403)."""

    status_code = 403
    error_code = "forbidden"
    default_message = "The user is not allowed to access the system."


class InvalidTokenError(AuthError):
    status_code = 401
    error_code = "invalid_token"
    default_message = "Token is invalid or expired."


class FingerprintMismatchError(AuthError):
    """The presenting device does not match the device the session was bound to (401)."""

    status_code = 401
    error_code = "device_mismatch"
    default_message = "Unrecognized device."


class NoActiveSessionError(AuthError):
    status_code = 401
    error_code = "no_active_session"
    default_message = "No active session. Log in again."


class SigningError(RuntimeError):
    """Raised when a token cannot be signed because no signing key is configured."""

"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Access tokens are read in priority order:
  1. X-AUTH-TOKEN cookie -- set by POST /api/v1/auth/login.
  2. Authorization: Bearer <token> header -- non-browser API clients.

Refresh tokens come only from the X-REFRESH-TOKEN cookie here; the refresh
route additionally accepts one in the request body.

get_current_session() runs the per-request session pipeline:
  validate -> device policy -> silent refresh if near expiry -> request.state
When the access token is about to expire and a refresh cookie is present, the
tokens are rotated in place and the replacement cookies are written onto the
dependency's Response, which FastAPI merges into the route's response. Routes
protected this way must return a model or dict, not a Response object, or the
replacement cookies are lost.

If the silent refresh fails the request continues on the still-valid access
token and the failure is logged; the client will be asked to log in once the
token actually expires.

try_get_current_session() is the soft variant (returns None on failure).

Layer rule: may import fastapi (Depends/Request/Response) because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from auth.errors import AuthError, InvalidTokenError
from auth.fingerprint import fingerprint_request
from auth.models import Session
from auth.service import AuthService
from auth.tokens import ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME, set_auth_cookies, token_preview

logger = logging.getLogger("staffauth.dependencies")


def extract_access_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE_NAME)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def extract_refresh_token(request: Request) -> str | None:
    return request.cookies.get(REFRESH_COOKIE_NAME) or None


def _resolve_session(request: Request, response: Response | None) -> Session:
    service: AuthService = request.app.state.auth_service

    token = extract_access_token(request)
    if not token:
        raise AuthError("Authentication required.")

    session = service.get_session(token)
    if session is None:
        raise InvalidTokenError()

    # Raises FingerprintMismatchError under the BLOCK policy, before any
    # rotation can revoke the bound device's tokens.
    service.check_device(session, fingerprint_request(request))

    if service.tokens.is_near_expiry(token):
        refresh_token = extract_refresh_token(request)
        if refresh_token is None:
            logger.warning(
                "Token %s near expiry for employee %s but no refresh cookie was sent",
                token_preview(token),
                session.employee_id,
            )
        else:
            try:
                session = service.refresh(refresh_token)
            except AuthError as exc:
                logger.warning(
                    "Silent refresh failed for employee %s (%s); continuing with current token",
                    session.employee_id,
                    exc.error_code,
                )
            else:
                if response is not None:
                    set_auth_cookies(response, session, request.app.state.settings)
                logger.info("Silently refreshed tokens for employee %s", session.employee_id)

    request.state.session = session
    return session


def try_get_current_session(request: Request, response: Response) -> Session | None:
    """Authenticate the request, returning None instead of raising on any auth failure."""
    try:
        return _resolve_session(request, response)
    except AuthError:
        return None


def get_current_session(request: Request, response: Response) -> Session:
    """Require an authenticated session. Raises an AuthError (mapped to 401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(get_current_session)): ...
    """
    return _resolve_session(request, response)

"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login     -- credential login; sets X-AUTH-TOKEN + X-REFRESH-TOKEN cookies
  POST /api/v1/auth/refresh   -- rotate tokens using the refresh token (body or cookie)
  POST /api/v1/auth/logout    -- end every session of the employee; clears cookies
  GET  /api/v1/auth/validate  -- 200 if the presented access token is live, 401 otherwise
  GET  /api/v1/auth/me        -- profile of the current session (requires auth)

Security:
  POST /login and /refresh carry a coarse per-IP request throttle (slowapi,
  LOGIN_RATE_LIMIT) on top of AuthService's failed-attempt blocking.
  Cache-Control: no-store on every response that carries tokens.
  Error responses never say which token check failed.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    RefreshRequest,
    SessionProfile,
    ValidateResponse,
)
from auth.dependencies import (
    extract_access_token,
    extract_refresh_token,
    get_current_session,
    try_get_current_session,
)
from auth.errors import AuthError, InvalidTokenError, NoActiveSessionError
from auth.fingerprint import extract_client_ip, extract_user_agent
from auth.models import Session
from auth.service import AuthService
from auth.tokens import clear_auth_cookies, set_auth_cookies

# Auth policy:
# - POST /api/v1/auth/login:     public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:   public -- authenticated by the refresh token itself
# - POST /api/v1/auth/logout:    requires an access token (cookie or Bearer)
# - GET  /api/v1/auth/validate:  soft check (try_get_current_session)
# - GET  /api/v1/auth/me:        requires auth (get_current_session)
router = APIRouter()


def _token_response(session: Session, expires_in: int) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            profile=SessionProfile.from_session(session),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set both auth cookies.

    Failures surface through the AuthError handler: 401 bad_credentials,
    403 forbidden (no access to the system), 429 rate_limited with Retry-After.
    """
    service: AuthService = request.app.state.auth_service
    settings = request.app.state.settings
    session = service.login(
        body.username,
        body.password,
        extract_client_ip(request),
        extract_user_agent(request),
    )
    resp = _token_response(session, settings.access_token_ttl_seconds)
    set_auth_cookies(resp, session, settings)
    return resp


@limiter.limit(login_rate_limit)
@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Redeem a refresh token for a new token pair. The old pair is revoked."""
    service: AuthService = request.app.state.auth_service
    settings = request.app.state.settings
    refresh_token = (body.refresh_token if body else None) or extract_refresh_token(request)
    if not refresh_token:
        raise InvalidTokenError("Refresh token required.")
    session = service.refresh(refresh_token)
    resp = _token_response(session, settings.access_token_ttl_seconds)
    set_auth_cookies(resp, session, settings)
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """End every session of the caller's employee and clear the auth cookies.

    A token that no longer backs a session still gets a 200 so a client
    retrying logout is not shown an error; its cookies are cleared either way.
    """
    token = extract_access_token(request)
    if not token:
        raise AuthError("Authentication required.")

    service: AuthService = request.app.state.auth_service
    try:
        count = service.logout(token, extract_client_ip(request))
    except NoActiveSessionError:
        body = LogoutResponse(message="Already logged out.")
    else:
        body = LogoutResponse(message="Logged out.", sessions_closed=count)

    resp = JSONResponse(content=body.model_dump())
    clear_auth_cookies(resp, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/validate", response_model=ValidateResponse)
def validate(session: Optional[Session] = Depends(try_get_current_session)) -> ValidateResponse:
    """Report whether the presented access token backs a live session."""
    if session is None:
        raise InvalidTokenError()
    return ValidateResponse(valid=True, employee_id=session.employee_id)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(session: Session = Depends(get_current_session)) -> MeResponse:
    """Return the profile bound to the current session."""
    return MeResponse(
        employee_id=session.employee_id,
        name=session.name,
        email=session.email,
        department_code=session.department_code,
        sales_person_code=session.sales_person_code,
        created_at=session.created_at.isoformat(),
        last_refreshed_at=session.last_refreshed_at.isoformat(),
    )

"""
API request and response models for StaffAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the Session dataclass in auth/models.py,
which owns the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Session

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh.

    Browser clients send nothing and rely on the X-REFRESH-TOKEN cookie.
    """

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionProfile(BaseModel):
    """Profile attributes bound to a session at login."""

    model_config = ConfigDict(frozen=True)

    employee_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    department_code: int = 0
    sales_person_code: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionProfile":
        return cls(
            employee_id=session.employee_id,
            name=session.name,
            email=session.email,
            department_code=session.department_code,
            sales_person_code=session.sales_person_code,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and POST /api/v1/auth/refresh.

    Tokens are also set as HttpOnly cookies. They are returned in the body
    for clients that authenticate with the Authorization header instead.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    profile: SessionProfile


class LogoutResponse(BaseModel):
    """Response for POST /api/v1/auth/logout."""

    model_config = ConfigDict(frozen=True)

    message: str
    sessions_closed: int = 0


class ValidateResponse(BaseModel):
    """Response for GET /api/v1/auth/validate."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    employee_id: Optional[int] = None


class MeResponse(SessionProfile):
    """Response for GET /api/v1/auth/me."""

    created_at: str
    last_refreshed_at: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict]] = None


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

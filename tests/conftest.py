"""
tests/conftest.py -- Shared test fixtures for StaffAuth unit and integration tests.

This module provides:
  - FakeClock / ShiftedUtcClock: injectable clocks for the limiter, store and tokens
  - FakeIdentityAuthority: in-process stand-in for the corporate identity service
  - RecordingAuditSink: keeps audit records in a list for assertions
  - make_settings(): Settings with a fixed key and test-friendly cookie flags
  - settings / settings_factory / utc_clock / fake_clock: small building blocks
  - parts / make_service: a fully wired AuthService over fresh components
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client / make_api_client: TestClient over the real ASGI stack

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
SECURE_COOKIES=false lets the TestClient cookie jar (plain http://testserver)
send the auth cookies back. LOGIN_RATE_LIMIT is raised so the slowapi throttle
never interferes with tests that are not about it.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import ExitStack, asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.audit import AuditAction
from auth.identity import IdentityResult
from auth.ratelimit import LoginRateLimiter
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.tokens import TokenAuthority
from core.config import Settings

TEST_SECRET = "k" * 64

# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ShiftedUtcClock:
    """UTC wall clock with an adjustable offset, for TokenAuthority.

    jose checks exp against real time, so tokens are issued relative to the
    real clock; shifting lets a test mint a token that is already near expiry.
    """

    def __init__(self) -> None:
        self.offset = timedelta(0)

    def __call__(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeIdentityAuthority:
    """IdentityAuthority that answers from an in-memory directory.

    Unknown users and wrong passwords get status 0. Setting .error makes every
    call raise it, simulating an unreachable authority.
    """

    def __init__(self) -> None:
        self.directory: dict[str, tuple[str, IdentityResult]] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None

    def add_employee(
        self,
        username: str,
        password: str,
        employee_id: int,
        *,
        department_code: int = 7,
        name: str = "Jane Doe",
        email: str = "jane.doe@example.com",
        sales_person_code: str = "SLP-12",
        access_number: int = 1,
    ) -> None:
        self.directory[username] = (
            password,
            IdentityResult(
                status=1,
                employee_id=employee_id,
                department_code=department_code,
                name=name,
                email=email,
                sales_person_code=sales_person_code,
                message="OK",
                access_number=access_number,
            ),
        )

    def authenticate(self, username: str, password: str) -> IdentityResult:
        self.calls.append(username)
        if self.error is not None:
            raise self.error
        entry = self.directory.get(username)
        if entry is None or entry[0] != password:
            return IdentityResult(status=0, message="Invalid credentials")
        return entry[1]


class RecordingAuditSink:
    """AuditSink that appends every record to .records. .fail makes it raise."""

    def __init__(self) -> None:
        self.records: list[dict] = []
        self.fail = False

    def record(
        self,
        employee_id: int,
        action: AuditAction,
        subject_type: str,
        subject_id: str,
        previous_value: str,
        new_value: str,
        origin: str,
        window_id: int,
    ) -> None:
        if self.fail:
            raise RuntimeError("audit backend unavailable")
        self.records.append(
            {
                "employee_id": employee_id,
                "action": action,
                "subject_type": subject_type,
                "subject_id": subject_id,
                "previous_value": previous_value,
                "new_value": new_value,
                "origin": origin,
                "window_id": window_id,
            }
        )


# ---------------------------------------------------------------------------
# Settings and service factories
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "secure_cookies": False}
    values.update(overrides)
    return Settings(**values)


class ServiceParts(NamedTuple):
    service: AuthService
    identity: FakeIdentityAuthority
    audit: RecordingAuditSink
    limiter_clock: FakeClock
    store_clock: FakeClock
    token_clock: ShiftedUtcClock


def build_service(**settings_overrides) -> ServiceParts:
    settings = make_settings(**settings_overrides)
    limiter_clock = FakeClock()
    store_clock = FakeClock()
    token_clock = ShiftedUtcClock()
    identity = FakeIdentityAuthority()
    identity.add_employee("jdoe", "s3cret", 42)
    audit = RecordingAuditSink()
    service = AuthService(
        tokens=TokenAuthority(settings, clock=token_clock),
        sessions=SessionStore(clock=store_clock),
        rate_limiter=LoginRateLimiter(
            max_attempts=settings.rate_limit_max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
            block_seconds=settings.rate_limit_block_seconds,
            clock=limiter_clock,
        ),
        identity=identity,
        audit=audit,
        settings=settings,
    )
    return ServiceParts(service, identity, audit, limiter_clock, store_clock, token_clock)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def utc_clock() -> ShiftedUtcClock:
    return ShiftedUtcClock()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def parts() -> ServiceParts:
    """Fresh AuthService with fakes; employee 'jdoe' / 's3cret' is id 42."""
    return build_service()


@pytest.fixture
def make_service() -> Callable[..., ServiceParts]:
    return build_service


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service (and its settings and store) into
    app.state so TestClient routes never reach a real identity authority.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = service.settings
        app.state.session_store = service.sessions
        app.state.auth_service = service
        yield

    return test_lifespan


class ApiContext(NamedTuple):
    client: TestClient
    parts: ServiceParts


@pytest.fixture
def make_api_client() -> Generator[Callable[..., ApiContext], None, None]:
    """Factory fixture: make_api_client(**settings_overrides) -> ApiContext.

    One TestClient per call, each with its own AuthService, so session and
    rate-limit state never leaks between tests. The shared slowapi counter
    store is reset too.
    """
    with ExitStack() as stack:

        def factory(**settings_overrides) -> ApiContext:
            limiter.reset()
            service_parts = build_service(**settings_overrides)
            app.router.lifespan_context = _patch_lifespan(service_parts.service)
            client = stack.enter_context(TestClient(app, raise_server_exceptions=True))
            return ApiContext(client, service_parts)

        yield factory


@pytest.fixture
def api_client(make_api_client) -> ApiContext:
    """ApiContext with default settings (device validation off)."""
    return make_api_client()

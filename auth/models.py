"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial helpers).
Stores and the service do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """The runtime record of one logged-in device for one employee.

    Keyed in the SessionStore by access_token. An employee may hold several
    sessions at once (one per device); logout ends all of them.

    Profile attributes (department_code, email, sales_person_code, name) are
    copied from the identity authority at login and never re-derived from a
    token afterwards. Access tokens do not carry name or email.

    device_fingerprint is bound at login and must not change for the life of
    the session. Refresh produces a new Session with the same binding rather
    than mutating this one.

    active flips to False only when the session is terminated; an inactive
    session is logically deleted even if a caller still holds a reference.
    """

    employee_id: int
    access_token: str
    refresh_token: str
    device_fingerprint: str
    department_code: int = 0
    email: str | None = None
    sales_person_code: str | None = None
    name: str | None = None
    client_ip: str = ""  # normalized login origin, audit display only
    created_at: datetime = field(default_factory=_utcnow)
    last_refreshed_at: datetime = field(default_factory=_utcnow)
    active: bool = True

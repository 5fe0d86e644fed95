"""
auth/identity.py -- Client for the external identity authority.

StaffAuth never verifies passwords itself. Credentials are forwarded to the
corporate identity authority, which answers with a structured result:

    {"Status": 1, "EmployeeID": 42, "Department": 7, "Name": "...",
     "Email": "...", "SlpCode": "...", "Message": "...", "AccessNumber": 1}

Status == 1 means the credentials were accepted. AccessNumber == 0 means the
employee exists but has no access to this system (permission denial); when
the field is absent, access is assumed. The authority sometimes wraps the
object in a one-element JSON array; that wrapper is removed.

Any transport or parse failure raises IdentityAuthorityError. The service
treats that exactly like a rejected password.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import requests

logger = logging.getLogger("staffauth.identity")

STATUS_OK = 1


class IdentityAuthorityError(Exception):
    """The identity authority could not be reached or returned an unusable answer."""


def _as_int(value: Any) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class IdentityResult:
    """Outcome of one credential check, as reported by the authority."""

    status: int
    employee_id: int | None = None
    department_code: int | None = None
    name: str | None = None
    email: str | None = None
    sales_person_code: str | None = None
    message: str | None = None
    access_number: int = 1

    @property
    def authenticated(self) -> bool:
        return self.status == STATUS_OK

    @property
    def has_access(self) -> bool:
        return self.authenticated and self.access_number != 0

    @classmethod
    def from_payload(cls, payload: Any) -> "IdentityResult":
        """Build a result from the authority's JSON body.

        Raises IdentityAuthorityError if the body is not an object (or a
        one-element array holding one).
        """
        if isinstance(payload, list):
            if len(payload) != 1:
                raise IdentityAuthorityError(f"Expected one identity record, got {len(payload)}")
            payload = payload[0]
        if not isinstance(payload, dict):
            raise IdentityAuthorityError("Identity authority returned a non-object payload")

        access_number = _as_int(payload.get("AccessNumber"))
        return cls(
            status=_as_int(payload.get("Status")) or 0,
            employee_id=_as_int(payload.get("EmployeeID")),
            department_code=_as_int(payload.get("Department")),
            name=_as_str(payload.get("Name")),
            email=_as_str(payload.get("Email")),
            sales_person_code=_as_str(payload.get("SlpCode")),
            message=_as_str(payload.get("Message")),
            access_number=1 if access_number is None else access_number,
        )


class IdentityAuthority(Protocol):
    def authenticate(self, username: str, password: str) -> IdentityResult: ...


class HttpIdentityAuthority:
    """IdentityAuthority backed by an HTTP endpoint.

    Holds one requests.Session (connection pool) per instance. At most three
    redirects are followed with the credentials body.
    """

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3

    def authenticate(self, username: str, password: str) -> IdentityResult:
        if not self.url:
            raise IdentityAuthorityError("IDENTITY_AUTHORITY_URL is not configured")
        try:
            resp = self._session.post(
                self.url,
                json={"username": username, "password": password},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            logger.warning("Identity authority request failed for %s: %s", username, e)
            raise IdentityAuthorityError(str(e)) from e
        except ValueError as e:
            logger.warning("Identity authority returned invalid JSON for %s", username)
            raise IdentityAuthorityError("Invalid JSON from identity authority") from e

        result = IdentityResult.from_payload(payload)
        logger.info(
            "Identity authority answered for %s: status=%s employee=%s",
            username,
            result.status,
            result.employee_id,
        )
        return result

    def close(self) -> None:
        self._session.close()

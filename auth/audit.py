"""
auth/audit.py -- Audit sink interface and the default log-only sink.

Only LOGIN and LOGOUT are audited. Token refreshes are not.

Persistent storage lives outside this service. Deployments that keep an audit
table plug in their own AuditSink; the default sink writes one structured
line per event to the "staffauth.audit" logger, which operators route to
their log pipeline.

A sink may raise. AuthService catches and logs sink failures so an audit
outage never fails a login or logout.

Layer rule: stdlib only.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

logger = logging.getLogger("staffauth.audit")

SUBJECT_AUTH = "AUTH"
WINDOW_AUTH = 1


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"


class AuditSink(Protocol):
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
    ) -> None: ...


class LoggingAuditSink:
    """AuditSink that emits each record as an INFO line on staffauth.audit."""

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
        logger.info(
            "audit action=%s employee=%s subject=%s/%s origin=%s window=%s previous=%r new=%r",
            AuditAction(action).value,
            employee_id,
            subject_type,
            subject_id,
            origin,
            window_id,
            previous_value,
            new_value,
        )

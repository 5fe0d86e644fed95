"""
auth/fingerprint.py -- Device fingerprint derivation and client identification.

A device fingerprint is base64(SHA-256("<ip>|<user-agent>")). It is bound to
a session at login and compared on refresh (and, when device validation is
enabled, on every authenticated request) to detect a token replayed from a
different device.

The request helpers resolve the real client address behind proxies in this
order: first X-Forwarded-For entry, X-Real-IP, socket peer. The service and
the HTTP boundary must use the same helpers so the fingerprint computed at
login matches the one computed on later requests.

Layer rule: stdlib only. Request objects are duck-typed (anything with
.headers and .client, e.g. a Starlette Request).
"""

from __future__ import annotations

import base64
import hashlib
import hmac

UNKNOWN_USER_AGENT = "Unknown"


def derive_fingerprint(ip: str, user_agent: str) -> str:
    """Return the deterministic device fingerprint for an (ip, user_agent) pair."""
    digest = hashlib.sha256(f"{ip}|{user_agent}".encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def fingerprints_match(stored: str | None, current: str | None) -> bool:
    """Compare two fingerprints in constant time. A missing side never matches."""
    if not stored or not current:
        return False
    return hmac.compare_digest(stored, current)


def extract_client_ip(request) -> str | None:
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip

    client = getattr(request, "client", None)
    return client.host if client else None


def extract_user_agent(request) -> str:
    return request.headers.get("User-Agent") or UNKNOWN_USER_AGENT


def fingerprint_request(request) -> str:
    """Derive the fingerprint of the device that sent this request."""
    return derive_fingerprint(extract_client_ip(request) or "", extract_user_agent(request))

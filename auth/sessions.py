"""
auth/sessions.py -- In-memory session table and revoked-token blacklist.

Pattern: Repository over two process-local tables.
  _sessions   access_token -> Session   (live sessions only)
  _blacklist  token -> (revoked_at, hold_until)

The store is injected into AuthService by reference (app.state.session_store
in the API); one instance is shared per process.

Thread safety: every public method runs under one re-entrant lock and is
atomic on its own. Composite sequences performed by the service (validate,
then refresh) are NOT serialized here. rotate() re-checks inside the lock
that the old session is still active, so a refresh that loses a race against
logout-everywhere cannot bring a terminated session back. Two concurrent
refreshes of one session both succeed and leave consistent state.

Blacklist retention: sweep_expired_blacklist() drops an entry once it is
older than the retention window and past its hold_until. Refresh tokens are
revoked with a hold of the refresh token lifetime, so a spent refresh token
stays blacklisted for as long as its signature would still verify.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from auth.models import Session

logger = logging.getLogger("staffauth.sessions")


class SessionStore:
    """Concurrent map of active sessions plus a time-bounded token blacklist.

    Usage:
        store = SessionStore()
        store.put(session)
        store.get(session.access_token)
        store.invalidate_all_for_employee(session.employee_id)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._blacklist: dict[str, tuple[float, float]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def put(self, session: Session) -> None:
        """Store session keyed by its access token, replacing any previous entry for that key."""
        with self._lock:
            self._sessions[session.access_token] = session

    def get(self, access_token: str) -> Session | None:
        with self._lock:
            return self._sessions.get(access_token)

    def remove(self, access_token: str) -> Session | None:
        """Drop the entry for access_token. Returns the removed session, or None."""
        with self._lock:
            return self._sessions.pop(access_token, None)

    def find_by_employee_id(self, employee_id: int, device_fingerprint: str | None = None) -> Session | None:
        """Return an active session for employee_id, or None.

        With device_fingerprint, a session bound to that device is preferred so
        an employee logged in on several devices refreshes the right one. When
        no session matches the device, the first active session is returned and
        the caller's fingerprint check decides.
        """
        with self._lock:
            candidates = [s for s in self._sessions.values() if s.employee_id == employee_id and s.active]
        if not candidates:
            return None
        if device_fingerprint is not None:
            for session in candidates:
                if session.device_fingerprint == device_fingerprint:
                    return session
        return candidates[0]

    def sessions_for_employee(self, employee_id: int) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.employee_id == employee_id and s.active]

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.active)

    def rotate(self, old: Session, new: Session, refresh_hold_seconds: float = 0.0) -> bool:
        """Replace old with new in one step. Returns False if old was already terminated.

        Removes old's key, blacklists old's access and refresh tokens, and
        stores new. Running it twice for the same old session (two concurrent
        refreshes) only re-blacklists tokens that are already revoked.

        If old was terminated in the meantime (logout-everywhere), new is not
        stored and its tokens are blacklisted instead.
        """
        with self._lock:
            if not old.active:
                self._revoke(new.access_token)
                self._revoke(new.refresh_token, refresh_hold_seconds)
                return False
            self._sessions.pop(old.access_token, None)
            self._revoke(old.access_token)
            if old.refresh_token != new.refresh_token:
                self._revoke(old.refresh_token, refresh_hold_seconds)
            self._sessions[new.access_token] = new
            return True

    def invalidate_all_for_employee(self, employee_id: int, refresh_hold_seconds: float = 0.0) -> list[Session]:
        """Terminate every session of employee_id (logout-everywhere).

        Each matching session is marked inactive, removed from the live table,
        and its access and refresh tokens are blacklisted -- all inside one
        critical section, so no reader observes a half-logged-out employee.
        Returns the terminated sessions.
        """
        with self._lock:
            terminated = [s for s in self._sessions.values() if s.employee_id == employee_id]
            for session in terminated:
                session.active = False
                del self._sessions[session.access_token]
                self._revoke(session.access_token)
                self._revoke(session.refresh_token, refresh_hold_seconds)
        if terminated:
            logger.info("Terminated %d session(s) for employee %s", len(terminated), employee_id)
        return terminated

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def _revoke(self, token: str, hold_seconds: float = 0.0) -> None:
        # Caller holds the lock. Re-revoking refreshes the timestamp but never
        # shortens an existing hold.
        if not token:
            return
        now = self._clock()
        hold_until = now + hold_seconds
        previous = self._blacklist.get(token)
        if previous is not None:
            hold_until = max(hold_until, previous[1])
        self._blacklist[token] = (now, hold_until)

    def blacklist(self, token: str, hold_seconds: float = 0.0) -> None:
        """Revoke token. It survives sweeps for at least hold_seconds."""
        with self._lock:
            self._revoke(token, hold_seconds)

    def is_blacklisted(self, token: str) -> bool:
        with self._lock:
            return token in self._blacklist

    def blacklist_size(self) -> int:
        with self._lock:
            return len(self._blacklist)

    def sweep_expired_blacklist(self, retention_seconds: float) -> int:
        """Drop entries revoked more than retention_seconds ago whose hold has ended.

        Returns the count removed.
        """
        with self._lock:
            now = self._clock()
            cutoff = now - retention_seconds
            expired = [
                token
                for token, (revoked_at, hold_until) in self._blacklist.items()
                if revoked_at <= cutoff and hold_until <= now
            ]
            for token in expired:
                del self._blacklist[token]
            removed = len(expired)
        if removed:
            logger.debug("Swept %d expired blacklist entries", removed)
        return removed

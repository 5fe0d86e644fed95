"""
auth/ratelimit.py -- Per-IP failed-login limiter (brute-force guard).

Sliding window of failed-attempt timestamps per client IP. Reaching
max_attempts inside the window blocks the IP for block_seconds. States:

    UNTRACKED -> TRACKING (1..N-1 failures) -> BLOCKED (until blocked_until)
              -> UNTRACKED (block lapses, or a successful login clears it)

Blocks lapse lazily: is_blocked() clears an expired block on read, so no
background sweeper is needed.

This is not a request-rate limiter. The coarse per-route request throttle
is slowapi's job (api/limiter.py); this class only counts failures.

Thread safety: one lock guards the window table. Every public method is a
single critical section.

Layer rule: stdlib only.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger("staffauth.ratelimit")


@dataclass
class RateLimitWindow:
    """Failure tracking for a single client IP."""

    attempts: deque[float] = field(default_factory=deque)
    blocked_until: float | None = None


class LoginRateLimiter:
    """In-memory failed-attempt limiter keyed by client IP.

    Usage:
        limiter = LoginRateLimiter(max_attempts=5, window_seconds=60, block_seconds=900)
        if limiter.is_blocked(ip): ...
        limiter.record_failed_attempt(ip)
        limiter.clear_attempts(ip)
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 60,
        block_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "LoginRateLimiter":
        return cls(
            max_attempts=settings.rate_limit_max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
            block_seconds=settings.rate_limit_block_seconds,
        )

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _evict_old(self, window: RateLimitWindow, now: float) -> None:
        while window.attempts and now - window.attempts[0] > self.window_seconds:
            window.attempts.popleft()

    def _active_block(self, ip: str, now: float) -> RateLimitWindow | None:
        """Return the window if the IP is currently blocked; drop it if the block lapsed."""
        window = self._windows.get(ip)
        if window is None or window.blocked_until is None:
            return None
        if now >= window.blocked_until:
            del self._windows[ip]
            logger.info("Rate limit block lifted for %s", ip)
            return None
        return window

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_blocked(self, ip: str) -> bool:
        with self._lock:
            return self._active_block(ip, self._clock()) is not None

    def record_failed_attempt(self, ip: str) -> bool:
        """Record one failure for ip. Returns True if this attempt caused a new block."""
        with self._lock:
            now = self._clock()
            if self._active_block(ip, now) is not None:
                return False

            window = self._windows.setdefault(ip, RateLimitWindow())
            self._evict_old(window, now)
            window.attempts.append(now)

            if len(window.attempts) >= self.max_attempts:
                window.blocked_until = now + self.block_seconds
                logger.warning(
                    "IP %s blocked after %d failed attempts for %ds",
                    ip,
                    len(window.attempts),
                    self.block_seconds,
                )
                return True

            logger.debug("Failed attempt for %s (%d/%d)", ip, len(window.attempts), self.max_attempts)
            return False

    def clear_attempts(self, ip: str) -> None:
        """Forget everything about ip. Called after a successful login."""
        with self._lock:
            self._windows.pop(ip, None)

    def remaining_attempts(self, ip: str) -> int:
        with self._lock:
            now = self._clock()
            if self._active_block(ip, now) is not None:
                return 0
            window = self._windows.get(ip)
            if window is None:
                return self.max_attempts
            self._evict_old(window, now)
            if not window.attempts:
                del self._windows[ip]
                return self.max_attempts
            return max(0, self.max_attempts - len(window.attempts))

    def unblock_time(self, ip: str) -> float | None:
        """Clock value at which ip is unblocked, or None if it is not blocked."""
        with self._lock:
            window = self._active_block(ip, self._clock())
            return window.blocked_until if window else None

    def retry_after(self, ip: str) -> int:
        """Whole seconds until ip may try again (0 when not blocked)."""
        with self._lock:
            now = self._clock()
            window = self._active_block(ip, now)
            if window is None or window.blocked_until is None:
                return 0
            return max(1, int(window.blocked_until - now + 0.999))

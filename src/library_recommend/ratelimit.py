"""
Fixed-window request counter keyed by client.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: int | None = None  # seconds


@dataclass
class _Window:
    count: int
    expires_at: float


class RateLimiter:
    """
    In-process rate limiter.

    Each key gets a window that starts with its first request. Expired
    windows are dropped lazily on every check. The clock is injectable so
    tests don't depend on wall time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def _cleanup_expired(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if w.expires_at <= now]:
            del self._windows[key]

    def check(self, key: str, window_seconds: float, max_requests: int) -> RateLimitResult:
        """Count a request for ``key`` and report whether it is allowed."""
        now = self._clock()
        self._cleanup_expired(now)

        window = self._windows.get(key)
        if window is None:
            self._windows[key] = _Window(count=1, expires_at=now + window_seconds)
            return RateLimitResult(allowed=True)

        if window.count >= max_requests:
            retry_after = max(0, math.ceil(window.expires_at - now))
            return RateLimitResult(allowed=False, retry_after=retry_after)

        window.count += 1
        return RateLimitResult(allowed=True)

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

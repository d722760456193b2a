"""Per-client fixed window throttling for the public auth endpoints."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field


class RateLimitExceeded(RuntimeError):
    """Raised when a client used up its allowance for the current window."""

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many authentication attempts, please try again later.")
        self.retry_after = retry_after


@dataclass
class FixedWindowRateLimiter:
    max_requests: int
    window_seconds: int
    clock: Callable[[], float] = time.monotonic
    _windows: dict[str, tuple[float, int]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _last_sweep: float | None = None

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key: str) -> None:
        now = self.clock()
        with self._lock:
            self._sweep(now)
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_requests:
                retry_after = max(1, int(self.window_seconds - (now - started)))
                raise RateLimitExceeded(retry_after)
            self._windows[key] = (started, count + 1)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock; runs at most once per window.
        if self._last_sweep is None:
            self._last_sweep = now
            return
        if now - self._last_sweep < self.window_seconds:
            return
        self._windows = {
            key: window for key, window in self._windows.items() if now - window[0] < self.window_seconds
        }
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._last_sweep = None

import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple


class RateLimiter:
    """Fixed-window request counter keyed by client.

    ``limit`` requests are allowed per ``window`` seconds; a limit of 0
    disables the check entirely.
    """

    def __init__(self, limit: int, window: float, clock: Optional[Callable[[], float]] = None) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock or time.monotonic
        self._lock = Lock()
        self._hits: Dict[str, Tuple[float, int]] = {}

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def hit(self, key: str) -> bool:
        """Count one request for ``key``; False once the window is exhausted."""
        if not self.enabled:
            return True
        now = self._clock()
        with self._lock:
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
            if len(self._hits) > 10000:
                self._purge(now)
        return count <= self.limit

    def retry_after(self, key: str) -> int:
        with self._lock:
            started, _ = self._hits.get(key, (self._clock(), 0))
        return max(1, int(self.window - (self._clock() - started)))

    def _purge(self, now: float) -> None:
        expired = [key for key, (started, _) in self._hits.items() if now - started >= self.window]
        for key in expired:
            del self._hits[key]

"""Per-client sliding-window request limiting for the HTTP boundary."""
import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """
    Allows at most `max_requests` per client within any `window_seconds` span.

    State is in-memory and per-process, like the job registry. Clients whose
    requests have all left the window are forgotten.
    """
    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def _expire(self, hits: Deque[float], now: float):
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def _sweep(self, now: float):
        for client_key in list(self._hits):
            hits = self._hits[client_key]
            self._expire(hits, now)
            if not hits:
                del self._hits[client_key]
        self._last_sweep = now

    def allow(self, client_key: str) -> bool:
        """Records a request for `client_key` and reports whether it is within the limit."""
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)
        hits = self._hits.setdefault(client_key, deque())
        self._expire(hits, now)
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def retry_after(self, client_key: str) -> float:
        """Seconds until the oldest recorded request leaves the window."""
        hits = self._hits.get(client_key)
        if not hits:
            return 0.0
        return max(0.0, self.window_seconds - (self._clock() - hits[0]))

"""Per-viewer send rate limiting with a sliding window."""

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict

from structlog import get_logger

logger = get_logger()


class RateLimitExceeded(Exception):
    """Exception raised when rate limit is exceeded."""

    pass


class RateLimiter:
    """Sliding window limiter keyed by an arbitrary string."""

    def __init__(
        self,
        rate_limit: int = 30,
        time_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limit = rate_limit
        self.time_window = time_window
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = Lock()
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    def _prune(self, key: str, now: float) -> Deque[float]:
        window = self._requests.setdefault(key, deque())
        while window and now - window[0] >= self.time_window:
            window.popleft()
        return window

    def check(self, key: str) -> None:
        """Record one request for ``key`` or raise ``RateLimitExceeded``."""
        with self._lock:
            now = self._clock()
            window = self._prune(key, now)
            if len(window) >= self.rate_limit:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(window),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} sends per {self.time_window:g} seconds exceeded"
                )
            window.append(now)

    def remaining(self, key: str) -> int:
        with self._lock:
            window = self._prune(key, self._clock())
            remaining = max(0, self.rate_limit - len(window))
            if not window:
                del self._requests[key]
            return remaining

    def cleanup(self) -> int:
        """Forget keys whose window has emptied. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, window in self._requests.items()
                if not window or now - window[-1] >= self.time_window
            ]
            for key in stale:
                del self._requests[key]
        return len(stale)

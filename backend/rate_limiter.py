"""
Sliding window rate limiting keyed by operation name.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


class RateLimiter:
    """Sliding window rate limiter with one window per key."""

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_calls: Maximum calls allowed in the window
            window_seconds: Time window in seconds
            clock: Time source (injectable for tests)
        """
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.clock = clock
        self.calls: Dict[str, Deque[float]] = {}
        # Prune, check and record must happen as one step
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        calls = self.calls.setdefault(key, deque())
        while calls and calls[0] <= now - self.window_seconds:
            calls.popleft()
        return calls

    def is_allowed(self, key: str = "default") -> bool:
        """Check if a call is allowed and record it if so."""
        with self._lock:
            now = self.clock()
            calls = self._prune(key, now)
            if len(calls) < self.max_calls:
                calls.append(now)
                return True
            return False

    def wait_time(self, key: str = "default") -> float:
        """Return seconds until next call is allowed (0 if allowed now)."""
        with self._lock:
            now = self.clock()
            calls = self._prune(key, now)
            if len(calls) < self.max_calls:
                return 0.0
            return max(0.0, calls[0] + self.window_seconds - now)

    def reset(self, key: str):
        with self._lock:
            self.calls.pop(key, None)

    def reset_all(self):
        with self._lock:
            self.calls.clear()


@dataclass(frozen=True)
class RateLimit:
    max_calls: int
    window_seconds: float


RATE_LIMITS: Dict[str, RateLimit] = {
    "cloud_request": RateLimit(10, 60.0),
    "item_label": RateLimit(20, 300.0),
    "vision_analysis": RateLimit(10, 60.0),
    "tts_speak": RateLimit(30, 60.0),
    "camera_capture": RateLimit(60, 60.0),
}


class RateLimiterRegistry:
    """One limiter per operation class, each with its own limits."""

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimit]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limiters = {
            name: RateLimiter(limit.max_calls, limit.window_seconds, clock)
            for name, limit in (limits or RATE_LIMITS).items()
        }

    def is_allowed(self, operation: str, key: str = "default") -> bool:
        """
        Raises:
            KeyError: If no limit is configured for the operation
        """
        return self.limiters[operation].is_allowed(key)

    def wait_time(self, operation: str, key: str = "default") -> float:
        return self.limiters[operation].wait_time(key)

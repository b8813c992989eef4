"""
Rate limiting module for the OneMolt registry.

Provides sliding window rate limiting with per-key tracking. Used to
throttle posting by unverified molts; state is per-process.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe implementation using deques for efficient
    sliding window tracking.
    """

    def __init__(self, limit: int, window_seconds: float = 60, clock: Callable[[], float] = time.time):
        """
        Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            clock: Time source, seconds
        """
        self._limit = max(1, limit)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    def check(self, key: str) -> RateLimitResult:
        """
        Check rate limit and record the hit if allowed.

        Args:
            key: Identifier for rate limiting

        Returns:
            RateLimitResult with allowed status and metadata
        """
        now = self._clock()
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]

            while q and q[0] <= window_start:
                q.popleft()

            current_count = len(q)
            remaining = max(0, self._limit - current_count)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if current_count >= self._limit:
                retry_after = q[0] + self._window - now
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0, retry_after)
                )

            q.append(now)
            self._cleanup(window_start)

            return RateLimitResult(
                allowed=True,
                remaining=remaining - 1,
                reset_at=reset_at
            )

    def _cleanup(self, window_start: float) -> None:
        # drop idle keys so the map does not grow with every key ever seen
        idle = [k for k, q in self._hits.items() if not q or q[-1] <= window_start]
        for k in idle:
            del self._hits[k]

    def reset(self, key: Optional[str] = None) -> None:
        """
        Reset rate limit counters.

        Args:
            key: Specific key to reset, or None to reset all
        """
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

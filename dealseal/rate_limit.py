"""
Rate limiting module for DealSeal.

Provides sliding window rate limiting with per-key tracking, grouped
into the named buckets the protocol consults (deal creation, code
issuance, confirmation, invitation email, general).
"""

import time
import threading
from collections import defaultdict, deque
from typing import Callable, Dict, Optional, Tuple
from dataclasses import dataclass

from .config import Settings
from .errors import RateLimited
from .logging_config import security_log


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

    def __init__(self, limit: int, window_seconds: int = 60,
                 clock: Callable[[], float] = time.time):
        """
        Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            clock: Time source in seconds
        """
        self._limit = max(1, limit)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.RLock()

    def allow(self, key: str) -> bool:
        """
        Check if a request should be allowed.

        Args:
            key: Identifier for rate limiting (e.g., client ID, endpoint)

        Returns:
            True if request is allowed, False if rate limited
        """
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """
        Check rate limit and return detailed result.

        Args:
            key: Identifier for rate limiting

        Returns:
            RateLimitResult with allowed status and metadata
        """
        now = self._clock()
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]

            # Remove expired entries
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

            # Record this request
            q.append(now)

            return RateLimitResult(
                allowed=True,
                remaining=remaining - 1,
                reset_at=reset_at
            )

    def get_stats(self, key: str) -> Dict[str, int]:
        """
        Get current stats for a key.

        Returns:
            Dict with current count and limit
        """
        window_start = self._clock() - self._window

        with self._lock:
            q = self._hits[key]
            count = sum(1 for t in q if t > window_start)

            return {
                "current": count,
                "limit": self._limit,
                "remaining": max(0, self._limit - count),
                "window_seconds": self._window
            }

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

    def cleanup_expired(self) -> int:
        """
        Remove expired entries from all keys.

        Returns:
            Number of entries removed
        """
        window_start = self._clock() - self._window
        removed = 0

        with self._lock:
            empty_keys = []

            for key, q in self._hits.items():
                while q and q[0] <= window_start:
                    q.popleft()
                    removed += 1

                if not q:
                    empty_keys.append(key)

            for key in empty_keys:
                del self._hits[key]

        return removed


class RateLimitPolicy:
    """
    One limiter per named bucket.

    check_rate_limit(bucket, key) is what the protocol calls; a deny
    raises RateLimited before any state is touched.
    """

    def __init__(self, limits: Dict[str, Tuple[int, int]],
                 clock: Callable[[], float] = time.time):
        self._limiters = {
            bucket: RateLimiter(count, window, clock=clock)
            for bucket, (count, window) in limits.items()
        }

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.time) -> 'RateLimitPolicy':
        return cls(settings.rate_limits, clock=clock)

    def limiter(self, bucket: str) -> RateLimiter:
        try:
            return self._limiters[bucket]
        except KeyError:
            return self._limiters["general"]

    def check_rate_limit(self, bucket: str, key: str) -> bool:
        """Return True if allowed; the hit is recorded."""
        return self.limiter(bucket).allow(f"{bucket}:{key}")

    def enforce(self, bucket: str, key: str) -> RateLimitResult:
        """
        Raises:
            RateLimited: If the bucket is exhausted for this key
        """
        result = self.limiter(bucket).check(f"{bucket}:{key}")
        if not result.allowed:
            security_log.rate_limit_exceeded(key, bucket)
            raise RateLimited(f"{bucket} limit reached for {key}")
        return result

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()

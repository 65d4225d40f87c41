"""Fixed-window rate limiter for the plrsync server.

Each caller identity gets a bucket holding a request count and the start of
its current window. Buckets live only in process memory: they are created
with the server and lost on restart, which is acceptable for best-effort
admission control.

This is a fixed window, not a sliding window or token bucket, so a caller
can burst up to twice the quota across a window boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MAX_REQUESTS = 60


@dataclass
class RateBucket:
    """Request count of one caller within its current window."""

    count: int
    window_start: float


class RateLimiter:
    """Admits at most ``max_requests`` per ``window_seconds`` per key.

    The check-and-increment for a key runs under the lock of that key's
    stripe, so two concurrent requests can never both observe a count below
    the quota when only one of them should be admitted. Requests for keys on
    different stripes do not contend.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        clock: Callable[[], float] = time.monotonic,
        stripes: int = 64,
    ) -> None:
        """Initialize rate limiter.

        Args:
            window_seconds: Length of a fixed window
            max_requests: Quota per window; 0 or less disables limiting
            clock: Monotonic time source in seconds
            stripes: Number of locks the key space is spread over
        """
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)
        self._clock = clock
        self._buckets: Dict[str, RateBucket] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]
        self._last_purge = clock()

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def check(self, key: str) -> None:
        """Count a request against a key's quota.

        Args:
            key: Caller identity (resolved principal id)

        Raises:
            RateLimitedError: If the quota for the current window is used up.
                The bucket is left untouched in that case.
        """
        if self.max_requests <= 0:
            return

        now = self._clock()
        if now - self._last_purge >= self.window_seconds:
            self.purge_expired()

        with self._lock_for(key):
            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = RateBucket(count=1, window_start=now)
                return

            if now - bucket.window_start >= self.window_seconds:
                bucket.count = 1
                bucket.window_start = now
                return

            if bucket.count >= self.max_requests:
                retry_after = max(0.0, bucket.window_start + self.window_seconds - now)
                logger.warning(
                    f"Rate limit exceeded for {key}: {bucket.count} requests "
                    f"in {self.window_seconds:.0f}s window"
                )
                raise RateLimitedError(
                    "Rate limit exceeded", retry_after=round(retry_after, 3)
                )

            bucket.count += 1

    def allow(self, key: str) -> bool:
        """Check a request, returning False instead of raising when limited."""
        try:
            self.check(key)
        except RateLimitedError:
            return False
        return True

    def get_bucket(self, key: str) -> Optional[RateBucket]:
        """Get a copy of a key's bucket, or None if it has none."""
        with self._lock_for(key):
            bucket = self._buckets.get(key)
            if bucket is None:
                return None
            return RateBucket(count=bucket.count, window_start=bucket.window_start)

    def reset(self, key: Optional[str] = None) -> None:
        """Drop one key's bucket, or all buckets when key is None."""
        keys = list(self._buckets) if key is None else [key]
        for k in keys:
            with self._lock_for(k):
                self._buckets.pop(k, None)

    def purge_expired(self) -> int:
        """Drop buckets whose window has ended.

        Returns:
            Number of buckets removed
        """
        now = self._clock()
        self._last_purge = now
        removed = 0
        for key in list(self._buckets):
            with self._lock_for(key):
                bucket = self._buckets.get(key)
                if bucket is not None and now - bucket.window_start >= self.window_seconds:
                    del self._buckets[key]
                    removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired rate limit buckets")
        return removed

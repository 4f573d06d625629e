"""
Rate Limiter - Fixed-window request budget per caller.

Buckets live in a bounded LRU map. Expired windows are evicted on access;
on capacity overflow every expired window is dropped first and only then
the least recently used live caller, so memory stays bounded without
background sweeping.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from structlog import get_logger

from keymarket.config import settings
from keymarket.exceptions import RateLimitExceededError

logger = get_logger(__name__)


@dataclass
class _Window:
    count: int
    expires_at: float


class RateLimiter:
    """LRU-bounded fixed-window limiter. Safe on a single event loop."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        max_keys: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1 or window_seconds <= 0 or max_keys < 1:
            raise ValueError("limit, window_seconds and max_keys must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> int:
        """
        Count one request for a caller.

        Returns the remaining budget in the current window.

        Raises:
            RateLimitExceededError: Budget exhausted for this window
        """
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.expires_at:
            window = _Window(count=0, expires_at=now + self.window_seconds)
            self._windows[key] = window
        self._windows.move_to_end(key)

        self._evict_expired(now)
        if len(self._windows) > self.max_keys:
            self._purge_expired(now)
        while len(self._windows) > self.max_keys:
            self._windows.popitem(last=False)

        if window.count >= self.limit:
            retry_after = max(1, int(window.expires_at - now))
            logger.warning("rate_limit_exceeded", key=key, retry_after=retry_after)
            raise RateLimitExceededError(key, retry_after)

        window.count += 1
        return self.limit - window.count

    def reset(self) -> None:
        """Forget every caller."""
        self._windows.clear()

    def _evict_expired(self, now: float) -> None:
        # Oldest-touched entries sit at the front; stop at the first live one
        while self._windows:
            key, window = next(iter(self._windows.items()))
            if now < window.expires_at:
                break
            del self._windows[key]

    def _purge_expired(self, now: float) -> None:
        # Order is by last touch, not by expiry, so expired windows can sit
        # behind live ones. Full scan before evicting a live caller.
        expired = [key for key, window in self._windows.items() if now >= window.expires_at]
        for key in expired:
            del self._windows[key]


# Global limiter for purchase intake and refund requests
intake_limiter = RateLimiter(
    limit=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds,
    max_keys=settings.rate_limit_max_keys,
)

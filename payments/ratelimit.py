"""Per-key request limiting for the IPN endpoint."""
import logging
import threading
import time
from collections import deque
from typing import Deque, Dict

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)


class RateLimiter:
    def allow(self, key: str) -> bool:
        raise NotImplementedError


class SlidingWindowRateLimiter(RateLimiter):
    """At most ``limit`` hits per ``window`` seconds for each key, in this process only.

    Keys that have been quiet for a whole window are dropped every
    ``sweep_interval`` seconds so the table does not grow without bound.
    """

    def __init__(self, limit: int, window: float, sweep_interval: float = None, clock=time.monotonic):
        self.limit = limit
        self.window = window
        self.sweep_interval = sweep_interval if sweep_interval is not None else window
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)
            bucket = self._hits.setdefault(key, deque())
            while bucket and now - bucket[0] >= self.window:
                bucket.popleft()
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def _sweep(self, now: float) -> None:
        stale = [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]
        for k in stale:
            del self._hits[k]
        self._last_sweep = now
        if stale:
            logger.debug("Rate limiter dropped %s idle keys", len(stale))

    def __len__(self):
        return len(self._hits)


class CacheRateLimiter(RateLimiter):
    """Fixed-window counter in the Django cache, shared by every process using that cache."""

    def __init__(self, limit: int, window: int, prefix: str = "payments:ratelimit"):
        self.limit = limit
        self.window = int(window)
        self.prefix = prefix

    def allow(self, key: str) -> bool:
        bucket = int(time.time() // self.window)
        cache_key = f"{self.prefix}:{key}:{bucket}"
        # add() is a no-op when the key exists, so only the first hit seeds the counter
        if cache.add(cache_key, 1, timeout=self.window):
            return self.limit >= 1
        try:
            count = cache.incr(cache_key)
        except ValueError:
            # expired between add() and incr()
            cache.set(cache_key, 1, timeout=self.window)
            count = 1
        return count <= self.limit


_limiter = None
_limiter_lock = threading.Lock()


def build_rate_limiter() -> RateLimiter:
    limit = settings.PAYMENTS_WEBHOOK_RATE_LIMIT
    window = settings.PAYMENTS_WEBHOOK_RATE_WINDOW
    backend = (settings.PAYMENTS_WEBHOOK_RATE_LIMITER or "memory").lower()
    if backend == "cache":
        return CacheRateLimiter(limit, window)
    if backend != "memory":
        logger.warning("Unknown PAYMENTS_WEBHOOK_RATE_LIMITER %r, using memory", backend)
    return SlidingWindowRateLimiter(limit, window)


def get_webhook_rate_limiter() -> RateLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = build_rate_limiter()
        return _limiter


def reset_webhook_rate_limiter() -> None:
    global _limiter
    with _limiter_lock:
        _limiter = None

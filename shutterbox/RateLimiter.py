import logging                # Module logger
import math                   # Window length rounding
from collections import namedtuple

# Rate limiting engine (the one Flask-Limiter runs on)
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

# =============================================================================
# FIXED-WINDOW RATE LIMITING KEYED BY (SUBJECT, ROUTE)
# =============================================================================

# reset_time is an epoch timestamp in milliseconds
RateLimitResult = namedtuple("RateLimitResult", ["allowed", "remaining", "reset_time"])


class RateLimiter:
    """
    Fixed-window rate limiter over an in-memory `limits` storage.

    A window opens on the first request after the previous window expired and
    lasts window_ms (rounded up to whole seconds). Counts are never
    decremented, so a burst straddling two windows can get up to twice the
    budget through. Rejection is a result, not an exception: callers turn it
    into a 429. Expired windows are dropped by the storage's own expiry timer.
    """

    def __init__(self, storage=None):
        self._storage = storage if storage is not None else MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._items = {}

    def _item(self, max_requests, window_ms):
        key = (max_requests, window_ms)
        item = self._items.get(key)
        if item is None:
            seconds = max(1, int(math.ceil(window_ms / 1000.0)))
            item = RateLimitItemPerSecond(max_requests, seconds, namespace="shutterbox")
            self._items[key] = item
        return item

    def check(self, subject, route, max_requests=10, window_ms=60000):
        """
        Count one request for (subject, route) and say whether it may proceed.
        """
        item = self._item(max_requests, window_ms)
        allowed = self._strategy.hit(item, subject, route)
        reset_at, remaining = self._strategy.get_window_stats(item, subject, route)
        if not allowed:
            logger.info("Rate limit exceeded for %s on %s (limit %d)", subject, route, max_requests)
        return RateLimitResult(allowed, max(0, remaining), int(reset_at * 1000))

    def reset(self):
        """
        Forget every window.
        """
        self._storage.reset()

import logging                # Module logger
import math                   # Unbounded cache size
import threading              # Lock around the shared store
import time                   # Expiry clock
from collections import namedtuple

# Per-entry TTL cache
from cachetools import TLRUCache

from shutterbox.Helpers import PeriodicTask

logger = logging.getLogger(__name__)

# =============================================================================
# SHORT-TTL RESPONSE CACHE
# =============================================================================
# Absorbs repeated reads between writes; writes invalidate whole key prefixes
# instead of tracking dependencies.

# Returned by get() when nothing usable is stored. Cached values may be falsy (0, []).
MISS = object()

CacheEntry = namedtuple("CacheEntry", ["value", "ttl"])


def _expires_at(key, entry, now):
    return now + entry.ttl


class ResponseCache:
    """
    In-memory cache with per-entry TTL and prefix invalidation.

    Not shared across processes: each server instance has its own copy, so
    callers may only rely on bounded staleness, never on global consistency.
    """

    def __init__(self, clock=time.monotonic, sweep_interval=120):
        # Request threads share the cache; cachetools containers are not thread safe
        self._lock = threading.Lock()
        # No size bound: entries only leave by expiry or invalidation
        self._store = TLRUCache(maxsize=math.inf, ttu=_expires_at, timer=clock)
        self._sweeper = PeriodicTask(sweep_interval, self.sweep, name="response-cache-sweep")

    def __len__(self):
        with self._lock:
            self._store.expire()
            return len(self._store)

    def __contains__(self, key):
        return self.get(key) is not MISS

    def set(self, key, value, ttl_seconds=60):
        """
        Store value under key for ttl_seconds.
        """
        with self._lock:
            self._store[key] = CacheEntry(value, ttl_seconds)

    def get(self, key, default=MISS):
        """
        Return the value for key, or default (MISS) when absent or expired.
        A miss also purges whatever has expired.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._store.expire()
                return default
            return entry.value

    def delete(self, key):
        with self._lock:
            self._store.pop(key, None)

    def clear(self):
        with self._lock:
            self._store.clear()

    def delete_by_prefix(self, prefix):
        """
        Remove every key that starts with prefix. Returns how many were removed.
        """
        with self._lock:
            self._store.expire()
            doomed = [key for key in list(self._store.keys()) if key.startswith(prefix)]
            for key in doomed:
                self._store.pop(key, None)
        return len(doomed)

    def sweep(self):
        """
        Drop every expired entry so abandoned keys do not pile up.
        """
        with self._lock:
            expired = self._store.expire()
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self):
        self._sweeper.start()

    def stop_sweeper(self):
        self._sweeper.cancel()

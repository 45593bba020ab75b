"""Fixed-window rate limiting over a pluggable counter store.

InMemoryCounterStore keeps counters in this process only: it is NOT safe
across several server instances. Production deployments with more than one
instance must set REDIS_URL so RedisCounterStore is used instead.
"""
from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class CounterWindow:
    count: int
    reset_time: dt.datetime


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: dt.datetime
    limit: int

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat().replace("+00:00", "Z"),
            "limit": self.limit,
        }


class InMemoryCounterStore:
    MAX_ENTRIES = 10_000

    def __init__(self, clock: Clock = utcnow, max_entries: int = MAX_ENTRIES):
        self._clock = clock
        self._max_entries = max_entries
        self._windows: Dict[str, CounterWindow] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_ms: int) -> CounterWindow:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_time:
                if window is None and len(self._windows) >= self._max_entries:
                    self._emergency_cleanup()
                window = CounterWindow(count=0, reset_time=now + dt.timedelta(milliseconds=window_ms))
                self._windows[key] = window
            window.count += 1
            return CounterWindow(count=window.count, reset_time=window.reset_time)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now > window.reset_time]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.info("Rate limit cleanup: removed %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)

    def _emergency_cleanup(self) -> None:
        # caller holds the lock; drop the oldest half
        logger.warning("Emergency rate limiter cleanup triggered (%d entries)", len(self._windows))
        ordered = sorted(self._windows.items(), key=lambda item: item[1].reset_time)
        for key, _ in ordered[: len(ordered) // 2]:
            del self._windows[key]


class RedisCounterStore:
    """Counters shared by every instance pointing at the same Redis."""

    def __init__(self, client: "redis.Redis", clock: Clock = utcnow, prefix: str = "ratelimit:"):
        self._client = client
        self._clock = clock
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def increment(self, key: str, window_ms: int) -> CounterWindow:
        redis_key = f"{self._prefix}{key}"
        count = int(self._client.incr(redis_key))
        if count == 1:
            self._client.pexpire(redis_key, window_ms)
        ttl_ms = int(self._client.pttl(redis_key))
        if ttl_ms < 0:
            # key lost its expiry (e.g. crash between INCR and PEXPIRE)
            self._client.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        return CounterWindow(count=count, reset_time=self._clock() + dt.timedelta(milliseconds=ttl_ms))

    def sweep(self) -> int:
        # Redis expires keys on its own
        return 0


class RateLimiter:
    def __init__(self, store, *, key_prefix: str, max_attempts: int, window_ms: int):
        self.store = store
        self.key_prefix = key_prefix
        self.max_attempts = max_attempts
        self.window_ms = window_ms

    def check(self, client_key: str) -> RateLimitResult:
        return check_rate_limit(
            self.store,
            f"{self.key_prefix}:{client_key}",
            max_attempts=self.max_attempts,
            window_ms=self.window_ms,
        )


def check_rate_limit(store, key: str, *, max_attempts: int, window_ms: int) -> RateLimitResult:
    """Count one attempt for key. Exceeding the limit is reported, never raised."""
    window = store.increment(key, window_ms)
    allowed = window.count <= max_attempts
    if not allowed:
        logger.warning("Rate limit exceeded for %s", key)
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, max_attempts - window.count),
        reset_time=window.reset_time,
        limit=max_attempts,
    )


MINUTE_MS = 60 * 1000

# operation class -> (max attempts, window)
LIMITS = {
    "rollback": (10, 5 * MINUTE_MS),
    "checkout": (10, MINUTE_MS),
    "stock-mutation": (10, MINUTE_MS),
    "admin": (5, MINUTE_MS),
    # protects the backing store, keyed by operation name
    "store-writes": (900, MINUTE_MS),
}


def make_limiter(store, operation_class: str) -> RateLimiter:
    max_attempts, window_ms = LIMITS[operation_class]
    return RateLimiter(store, key_prefix=operation_class, max_attempts=max_attempts, window_ms=window_ms)


def build_counter_store(redis_url: Optional[str] = None):
    if redis_url:
        logger.info("Using Redis counter store for rate limits")
        return RedisCounterStore.from_url(redis_url)
    logger.info("Using in-process counter store for rate limits (single instance only)")
    return InMemoryCounterStore()

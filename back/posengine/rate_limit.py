"""
Fixed-window rate limiting.

A counter per (namespace, identity, window bucket). The counter store is
pluggable: `MemoryCounterStore` keeps counts in this process only, while
`RedisCounterStore` shares them between instances.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis

from .settings import settings


@dataclass
class LimitResult:
    allowed: bool
    remaining: int
    retry_after: int


class CounterStore(Protocol):
    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment and return the new value. The key expires after ttl_seconds."""
        ...


class MemoryCounterStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: dict[str, tuple[int, float]] = {}

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counts.items() if expires_at <= now]
        for key in expired:
            del self._counts[key]

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            count, expires_at = self._counts.get(key, (0, now + ttl_seconds))
            count += 1
            self._counts[key] = (count, expires_at)
            return count


class RedisCounterStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    def incr(self, key: str, ttl_seconds: int) -> int:
        count = self._client.incr(key)
        if count == 1:
            self._client.expire(key, ttl_seconds)
        return int(count)


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        namespace: str,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.namespace = namespace
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _bucket_key(self, ident: str, bucket: int) -> str:
        return f"rl:{self.namespace}:{ident}:{bucket}"

    def hit(self, ident: str) -> LimitResult:
        """Count one attempt and decide it. Rejected attempts still count."""
        now = int(self._clock())
        bucket = now // self.window_seconds
        count = self.store.incr(self._bucket_key(ident, bucket), self.window_seconds)

        if count > self.limit:
            # until the next bucket starts
            retry_after = (bucket + 1) * self.window_seconds - now
            return LimitResult(False, 0, retry_after)
        return LimitResult(True, self.limit - count, 0)

    def record(self, ident: str) -> int:
        """Count one event regardless of the limit and return the window total."""
        bucket = int(self._clock()) // self.window_seconds
        return self.store.incr(self._bucket_key(ident, bucket), self.window_seconds)


def build_counter_store() -> CounterStore:
    if settings.shared_state_backend == "redis":
        return RedisCounterStore(redis.from_url(settings.redis_url))
    return MemoryCounterStore()

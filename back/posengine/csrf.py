"""
CSRF tokens for the unauthenticated customer gateway.

Tokens are random, issued by `GET /public/csrf-token`, and valid for a fixed
lifetime (30 minutes by default). The store behind them is pluggable the same
way the rate-limit counters are.
"""

import secrets
import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis

from .errors import PolicyViolation
from .settings import settings


class TokenStore(Protocol):
    def add(self, token: str, ttl_seconds: int) -> None:
        ...

    def contains(self, token: str) -> bool:
        ...


class MemoryTokenStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._expires: dict[str, float] = {}

    def add(self, token: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            # Expired tokens are dropped on every issue
            for stale in [t for t, expires_at in self._expires.items() if expires_at <= now]:
                del self._expires[stale]
            self._expires[token] = now + ttl_seconds

    def contains(self, token: str) -> bool:
        with self._lock:
            expires_at = self._expires.get(token)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._expires[token]
                return False
            return True


class RedisTokenStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    def add(self, token: str, ttl_seconds: int) -> None:
        self._client.set(f"csrf:{token}", "1", ex=ttl_seconds)

    def contains(self, token: str) -> bool:
        return bool(self._client.exists(f"csrf:{token}"))


class CsrfService:
    def __init__(self, store: TokenStore, ttl_seconds: int, enabled: bool = True):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled

    def issue(self) -> str:
        token = secrets.token_hex(32)
        self.store.add(token, self.ttl_seconds)
        return token

    def validate(self, token: str | None) -> None:
        if not self.enabled:
            return
        if not token or not self.store.contains(token):
            raise PolicyViolation(
                "invalid_csrf_token",
                "Invalid or expired security token. Please refresh and try again.",
            )


def build_token_store() -> TokenStore:
    if settings.shared_state_backend == "redis":
        return RedisTokenStore(redis.from_url(settings.redis_url))
    return MemoryTokenStore()

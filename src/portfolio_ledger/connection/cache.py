# src/portfolio_ledger/connection/cache.py
"""Key/value cache used for balances, summaries and prices.

Every implementation stores JSON-compatible payloads. Cache failures never
surface to callers: reads degrade to a miss and writes are dropped, with a
``cache_error`` log line so operators can see the degradation.
"""

import abc
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from portfolio_ledger.logging_config import structured_log_extra

logger = logging.getLogger(__name__)


def balances_key(user_id: str) -> str:
    return f"balances:{user_id}"


def summary_key(user_id: str) -> str:
    return f"summary:{user_id}"


def price_key(asset: str) -> str:
    return f"price:{asset}"


class Cache(abc.ABC):
    def __init__(self, key_prefix: str = ""):
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}" if self.key_prefix else key

    @abc.abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the cached payload or ``None`` on a miss."""
        pass

    @abc.abstractmethod
    def set_with_ttl(self, key: str, value: Any, ttl_seconds: int):
        pass

    @abc.abstractmethod
    def delete(self, key: str):
        """Remove ``key``. Implementations may raise; callers treat deletion as best-effort."""
        pass


class NullCache(Cache):
    """Cache that stores nothing; every read is a miss."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set_with_ttl(self, key: str, value: Any, ttl_seconds: int):
        return None

    def delete(self, key: str):
        return None


class InMemoryCache(Cache):
    """Process-local TTL cache keyed on the monotonic clock."""

    def __init__(self, key_prefix: str = "", clock: Callable[[], float] = time.monotonic):
        super().__init__(key_prefix)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[full_key]
                return None
        return json.loads(payload)

    def set_with_ttl(self, key: str, value: Any, ttl_seconds: int):
        payload = json.dumps(value)
        with self._lock:
            self._entries[self._key(key)] = (self._clock() + ttl_seconds, payload)

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(self._key(key), None)


class RedisCache(Cache):
    """Redis-backed cache storing JSON strings with ``SETEX``."""

    def __init__(self, client: "redis.Redis", key_prefix: str = ""):
        super().__init__(key_prefix)
        self.client = client

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        try:
            cached = self.client.get(full_key)
        except redis.RedisError as exc:
            logger.warning(
                "Cache read failed for %s: %s", full_key, exc,
                extra=structured_log_extra(event="cache_error", cache_key=full_key, operation="get"),
            )
            return None

        if cached is None:
            return None

        try:
            return json.loads(cached)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "Discarding undecodable cache entry %s: %s", full_key, exc,
                extra=structured_log_extra(event="cache_error", cache_key=full_key, operation="decode"),
            )
            return None

    def set_with_ttl(self, key: str, value: Any, ttl_seconds: int):
        full_key = self._key(key)
        try:
            self.client.setex(full_key, int(ttl_seconds), json.dumps(value))
        except redis.RedisError as exc:
            logger.warning(
                "Cache write failed for %s: %s", full_key, exc,
                extra=structured_log_extra(event="cache_error", cache_key=full_key, operation="set"),
            )

    def delete(self, key: str):
        self.client.delete(self._key(key))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


def build_cache(backend: str, redis_url: Optional[str] = None, key_prefix: str = "") -> Cache:
    """Construct the configured cache backend.

    An unreachable Redis server is not fatal: the returned cache still logs
    and degrades to misses on every call.
    """

    backend = (backend or "none").lower()
    if backend == "redis":
        if not redis_url:
            raise ValueError("cache.redis_url is required for the redis backend")
        cache = RedisCache.from_url(redis_url, key_prefix=key_prefix)
        if not cache.ping():
            logger.warning(
                "Redis at %s is not reachable; cache reads will miss until it recovers", redis_url,
                extra=structured_log_extra(event="cache_error", operation="ping"),
            )
        return cache
    if backend == "memory":
        return InMemoryCache(key_prefix=key_prefix)
    if backend == "none":
        return NullCache(key_prefix=key_prefix)
    raise ValueError(f"Unknown cache backend: {backend}")

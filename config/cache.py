"""
Ephemeral key/value cache with TTL semantics.

Two backends share one interface: an in-process TTLCache (one instance per
app, no module-level store) and RedisCache for multi-instance deployments.
"""
import json
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import redis
from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total > 0 else 0.0


class SessionCache:
    """Interface used by the session store"""

    def get_json(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set_json(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class TTLCache(SessionCache):
    def __init__(self, clock=time.monotonic):
        self._store = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.metrics = CacheMetrics()

    def get_json(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._store.get(key)
            if item:
                value, expires_at = item
                if self._clock() < expires_at:
                    self.metrics.hits += 1
                    return json.loads(value)
                del self._store[key]
            self.metrics.misses += 1
        return None

    def set_json(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            self.delete(key)
            return
        with self._lock:
            self._store[key] = (json.dumps(value, default=str), self._clock() + ttl)
            self.metrics.sets += 1

    def delete(self, key: str) -> None:
        with self._lock:
            if self._store.pop(key, None) is not None:
                self.metrics.deletes += 1

    def __len__(self):
        return len(self._store)


class RedisCache(SessionCache):
    def __init__(self, client: "redis.Redis", prefix: str = "pipeline:"):
        self.client = client
        self.prefix = prefix
        self.metrics = CacheMetrics()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.client.get(self.prefix + key)
        if raw is None:
            self.metrics.misses += 1
            return None
        self.metrics.hits += 1
        return json.loads(raw)

    def set_json(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            self.delete(key)
            return
        self.client.set(self.prefix + key, json.dumps(value, default=str), ex=int(ttl))
        self.metrics.sets += 1

    def delete(self, key: str) -> None:
        self.client.delete(self.prefix + key)
        self.metrics.deletes += 1


def get_session_cache(request: Request) -> SessionCache:
    """FastAPI dependency: the cache instance created at app startup"""
    return request.app.state.session_cache


def build_session_cache(settings) -> SessionCache:
    if settings.redis_url:
        logger.info("Session cache: Redis")
        return RedisCache.from_url(settings.redis_url)
    logger.info("Session cache: in-process TTL cache")
    return TTLCache()

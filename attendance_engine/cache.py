from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from attendance_engine.config import settings
from attendance_engine.metrics import record_cache_event


logger = logging.getLogger(__name__)


def cache_key(prefix: str, identifier: str | int | None = None) -> str:
    if identifier is None or identifier == '':
        return prefix
    return f'{prefix}:{identifier}'


class CacheBackend:
    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> None:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, tuple[float, Any]] = {}

    def _live(self, key: str) -> Any | None:
        item = self._store.get(key)
        if not item:
            return None
        expires_at, value = item
        if time.monotonic() >= expires_at:
            self._store.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._store[key] = (time.monotonic() + max(1, int(ttl)), value)

    def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store[key] = (time.monotonic() + max(1, int(ttl)), value)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [key for key in self._store.keys() if key.startswith(prefix)]:
                self._store.pop(key, None)


class RedisCacheBackend(CacheBackend):
    def __init__(self, redis_url: str) -> None:
        import redis

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    def get(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._client.setex(key, max(1, int(ttl)), json.dumps(value, default=str))

    def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        return bool(self._client.set(key, json.dumps(value, default=str), nx=True, ex=max(1, int(ttl))))

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def delete_prefix(self, prefix: str) -> None:
        cursor = 0
        pattern = f'{prefix}*'
        while True:
            cursor, keys = self._client.scan(cursor=cursor, match=pattern, count=200)
            if keys:
                self._client.delete(*keys)
            if cursor == 0:
                break


@dataclass
class CacheManager:
    backend: CacheBackend

    def get_cached(self, key: str) -> Any | None:
        value = self.backend.get(key)
        if value is not None:
            record_cache_event('cache_hit')
            logger.debug('cache hit: %s', key)
        else:
            record_cache_event('cache_miss')
            logger.debug('cache miss: %s', key)
        return value

    def set_cached(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl_value = ttl if ttl is not None else settings.default_cache_ttl
        self.backend.set(key, value, ttl_value)
        logger.debug('cache set: %s ttl=%s', key, ttl_value)

    def invalidate(self, key: str) -> None:
        self.backend.delete(key)
        record_cache_event('cache_invalidate')
        logger.debug('cache invalidate: %s', key)

    def invalidate_prefix(self, prefix: str) -> None:
        self.backend.delete_prefix(prefix)
        record_cache_event('cache_invalidate')
        logger.debug('cache invalidate prefix: %s', prefix)


def _build_cache_backend() -> CacheBackend:
    if settings.cache_backend == 'redis' and settings.cache_redis_url:
        try:
            return RedisCacheBackend(settings.cache_redis_url)
        except Exception:
            logger.exception('redis_cache_init_failed_falling_back_to_memory')
    return MemoryCacheBackend()


cache = CacheManager(backend=_build_cache_backend())

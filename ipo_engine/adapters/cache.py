from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from typing import Any

import redis

from ipo_engine.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "ipo"

REALTIME_TTL_SEC = 60
ANALYTICS_TTL_SEC = 600
LIST_TTL_SEC = 300


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def _loads(s: str | bytes | None) -> Any:
    if s is None:
        return None
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return s


class CacheBackend:
    """Key/value cache with TTL plus the namespaced helpers the engine uses.

    Values are JSON round-tripped on write so both backends hand back the
    same shapes (datetimes become ISO strings).
    """

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    @staticmethod
    def key(*parts: Any) -> str:
        return ":".join([KEY_PREFIX, *(str(p) for p in parts)])

    def health_check(self) -> dict:
        t0 = time.monotonic()
        try:
            ok = bool(self.ping())
        except Exception as e:
            logger.warning("cache health check failed: %s", e)
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy" if ok else "unhealthy",
            "latency_ms": int((time.monotonic() - t0) * 1000),
            "backend": type(self).__name__,
        }

    # --- namespaced helpers ---

    def cache_realtime(self, kind: str, entity: Any, payload: Any, ttl_seconds: int = REALTIME_TTL_SEC) -> bool:
        return self.set(self.key("realtime", kind.upper(), entity), payload, ttl_seconds)

    def get_realtime(self, kind: str, entity: Any) -> Any:
        return self.get(self.key("realtime", kind.upper(), entity))

    def cache_analytics(self, scope: str, ident: Any, data: Any, ttl_seconds: int = ANALYTICS_TTL_SEC) -> bool:
        return self.set(self.key("analytics", scope, ident), data, ttl_seconds)

    def get_analytics(self, scope: str, ident: Any) -> Any:
        return self.get(self.key("analytics", scope, ident))

    def invalidate_analytics(self, offering_id: int, symbol: str | None = None) -> None:
        self.delete(self.key("analytics", "offering", offering_id))
        if symbol:
            self.delete(self.key("analytics", "symbol", symbol))

    def cache_offering(self, offering_id: int, data: Any, ttl_seconds: int = LIST_TTL_SEC) -> bool:
        return self.set(self.key("offering", offering_id), data, ttl_seconds)

    def cache_offering_list(self, data: list, filter_: dict | None = None, ttl_seconds: int = LIST_TTL_SEC) -> bool:
        tag = ",".join(f"{k}={v}" for k, v in sorted((filter_ or {}).items())) or "all"
        return self.set(self.key("offerings", tag), data, ttl_seconds)

    def get_offering_list(self, filter_: dict | None = None) -> Any:
        tag = ",".join(f"{k}={v}" for k, v in sorted((filter_ or {}).items())) or "all"
        return self.get(self.key("offerings", tag))


class MemoryCache(CacheBackend):
    """In-memory TTL cache.

    Uses LRU eviction when ``max_entries`` is exceeded.
    """

    def __init__(self, default_ttl: int | None = None, max_entries: int | None = None) -> None:
        self.default_ttl = int(default_ttl if default_ttl is not None else settings.CACHE_DEFAULT_TTL_SEC)
        self.max_entries = int(max_entries if max_entries is not None else settings.CACHE_MAX_ENTRIES)
        # key -> (expires_at monotonic, json)
        self._store: OrderedDict[str, tuple[float, str]] = OrderedDict()

    def _evict_lru(self) -> None:
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)

    def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() >= expires_at:
            del self._store[key]
            return None
        self._store.move_to_end(key)  # refresh LRU position
        return _loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        self._store[key] = (time.monotonic() + float(ttl), _dumps(value))
        self._store.move_to_end(key)
        self._evict_lru()
        return True

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._store)


class RedisCache(CacheBackend):
    """Shared cache in Redis (JSON strings in/out)."""

    def __init__(self, url: str, default_ttl: int | None = None, client: redis.Redis | None = None) -> None:
        self.default_ttl = int(default_ttl if default_ttl is not None else settings.CACHE_DEFAULT_TTL_SEC)
        self._r = client or redis.Redis.from_url(url, decode_responses=True, socket_timeout=2.0)

    @property
    def client(self) -> redis.Redis:
        return self._r

    def get(self, key: str) -> Any:
        try:
            return _loads(self._r.get(key))
        except redis.RedisError as e:
            # stale-but-present is the caller's fallback; a cache miss is safe
            logger.warning("redis get failed key=%s: %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        try:
            return bool(self._r.set(key, _dumps(value), ex=max(1, int(ttl))))
        except redis.RedisError as e:
            logger.warning("redis set failed key=%s: %s", key, e)
            return False

    def delete(self, key: str) -> None:
        try:
            self._r.delete(key)
        except redis.RedisError as e:
            logger.warning("redis delete failed key=%s: %s", key, e)

    def ping(self) -> bool:
        return bool(self._r.ping())


def get_cache() -> CacheBackend:
    url = (settings.REDIS_URL or "").strip()
    if url:
        return RedisCache(url)
    return MemoryCache()

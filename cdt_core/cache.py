"""
Cache Layer Module

Namespaced, TTL-based key/value cache that sits in front of certificate
reads. Backends:
  - InMemoryCache: thread-safe dict with per-entry expiry (default)
  - RedisCache: shared cache over redis-py

The cache is a performance optimization only. Values are JSON-compatible
projections, never live objects, and every write path invalidates the keys
that could contain the changed certificate. FailSafeCache turns backend
failures into logged misses so a broken cache never fails a state change.

Every invalidation first bumps a generation counter. Readers fill the cache
with set_if_generation(), which refuses to store a projection computed
before the most recent invalidation.
"""

import copy
import fnmatch
import glob
import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis

from .certificates import CertificateStatus, ListFilters
from .errors import CacheError

logger = logging.getLogger(__name__)


class CacheKeys:
    """Key naming for everything the engine caches"""
    ADMIN_STATS = "admin_stats"
    PENDING = "pending_cdts"
    ALL_PATTERN = "cdts:all:*"

    @staticmethod
    def certificate(cdt_id: str) -> str:
        return f"cdt:{cdt_id}"

    @staticmethod
    def user_pattern(user_id: str) -> str:
        return f"cdts:user:{glob.escape(user_id)}:*"

    @staticmethod
    def user_page(user_id: str, status: Optional[CertificateStatus], page: int, limit: int) -> str:
        status_name = status.value if status else 'all'
        return f"cdts:user:{user_id}:status:{status_name}:page:{page}:limit:{limit}"

    @staticmethod
    def user_list(user_id: str, filters: ListFilters) -> str:
        return f"cdts:user:{user_id}:list:{filters.cache_fragment()}"

    @staticmethod
    def all_list(filters: ListFilters) -> str:
        return f"cdts:all:list:{filters.cache_fragment()}"

    @staticmethod
    def all_count(filters: ListFilters) -> str:
        return f"cdts:all:count:{filters.cache_fragment()}"

    @staticmethod
    def all_page(filters: ListFilters) -> str:
        return f"cdts:all:page:{filters.cache_fragment()}"


class CacheBackend(ABC):
    """Abstract interface for cache backends"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss or expiry"""
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value; ttl_seconds <= 0 never expires, None uses the default"""
        ...

    @abstractmethod
    def generation(self) -> int:
        """Current invalidation generation"""
        ...

    @abstractmethod
    def bump_generation(self) -> int:
        ...

    @abstractmethod
    def set_if_generation(self, key: str, value: Any, generation: int,
                          ttl_seconds: Optional[float] = None) -> bool:
        """Store a value only while the generation still equals `generation`"""
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns how many"""
        ...

    @abstractmethod
    def clear(self) -> int:
        ...

    @abstractmethod
    def get_metrics(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def reset_metrics(self) -> None:
        ...

    def close(self) -> None:
        pass


@dataclass
class CacheMetrics:
    """Hit/miss counters for observability"""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    invalidations: int = 0

    def snapshot(self, size: int, backend: str) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            'backend': backend,
            'hits': self.hits,
            'misses': self.misses,
            'sets': self.sets,
            'deletes': self.deletes,
            'invalidations': self.invalidations,
            'hit_rate': round(self.hits / total * 100, 2) if total else 0.0,
            'miss_rate': round(self.misses / total * 100, 2) if total else 0.0,
            'total_requests': total,
            'cache_size': size,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }


@dataclass
class CacheEntry:
    """Single cache entry with optional expiry"""
    value: Any
    expires_at: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class InMemoryCache(CacheBackend):
    """
    Thread-safe in-memory cache.

    Expired entries are dropped when read and by cleanup(); there is no
    background sweeper thread.
    """

    def __init__(self, default_ttl_seconds: float = 300,
                 clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics = CacheMetrics()
        self._generation = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._metrics.misses += 1
                logger.debug(f"Cache MISS: {key}")
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._metrics.misses += 1
                logger.debug(f"Cache EXPIRED: {key}")
                return None
            self._metrics.hits += 1
            logger.debug(f"Cache HIT: {key}")
            return copy.deepcopy(entry.value)

    def _store(self, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        # Caller holds the lock
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        self._entries[key] = CacheEntry(value=copy.deepcopy(value), expires_at=expires_at)
        self._metrics.sets += 1
        logger.debug(f"Cache SET: {key} (TTL: {ttl}s)")

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._store(key, value, ttl_seconds)

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def bump_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def set_if_generation(self, key: str, value: Any, generation: int,
                          ttl_seconds: Optional[float] = None) -> bool:
        with self._lock:
            if self._generation != generation:
                logger.debug(f"Cache SET skipped: {key} (generation {generation} is stale)")
                return False
            self._store(key, value, ttl_seconds)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                self._metrics.deletes += 1
                return True
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in keys:
                del self._entries[key]
            self._metrics.invalidations += len(keys)
        if keys:
            logger.debug(f"Cache INVALIDATE PATTERN: {pattern} ({len(keys)} entries)")
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cache CLEAR: {size} entries removed")
        return size

    def cleanup(self) -> int:
        """Drop expired entries"""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return self._metrics.snapshot(len(self._entries), "in-memory")

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = CacheMetrics()


class RedisCache(CacheBackend):
    """
    Redis-backed cache shared between processes.

    Values are stored as JSON under a key prefix. Driver failures are raised
    as CacheError.
    """

    def __init__(self, redis_url: Optional[str] = None, client=None,
                 key_prefix: str = "cdt-core:", default_ttl_seconds: float = 300):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._prefix = key_prefix
        self._default_ttl = default_ttl_seconds
        self._lock = threading.Lock()
        self._metrics = CacheMetrics()

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _count(self, field_name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + amount)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            raise CacheError(f"Redis unreachable: {exc}") from exc

    def get(self, key: str) -> Optional[Any]:
        try:
            data = self._client.get(self._key(key))
        except redis.RedisError as exc:
            self._count('misses')
            raise CacheError(f"Redis GET {key} failed: {exc}") from exc
        if data is None:
            self._count('misses')
            return None
        try:
            value = json.loads(data)
        except ValueError as exc:
            self._count('misses')
            raise CacheError(f"Redis value at {key} is not JSON: {exc}") from exc
        self._count('hits')
        return value

    def _write(self, target, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        payload = json.dumps(value, default=str)
        if ttl and ttl > 0:
            target.setex(self._key(key), max(1, math.ceil(ttl)), payload)
        else:
            target.set(self._key(key), payload)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        try:
            self._write(self._client, key, value, ttl_seconds)
        except redis.RedisError as exc:
            raise CacheError(f"Redis SET {key} failed: {exc}") from exc
        self._count('sets')

    @property
    def _generation_key(self) -> str:
        return self._key("meta:generation")

    def generation(self) -> int:
        try:
            return int(self._client.get(self._generation_key) or 0)
        except redis.RedisError as exc:
            raise CacheError(f"Redis GET generation failed: {exc}") from exc

    def bump_generation(self) -> int:
        try:
            return int(self._client.incr(self._generation_key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis INCR generation failed: {exc}") from exc

    def set_if_generation(self, key: str, value: Any, generation: int,
                          ttl_seconds: Optional[float] = None) -> bool:
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(self._generation_key)
                if int(pipe.get(self._generation_key) or 0) != generation:
                    return False
                pipe.multi()
                self._write(pipe, key, value, ttl_seconds)
                pipe.execute()
        except redis.WatchError:
            # Generation bumped between WATCH and EXEC
            return False
        except redis.RedisError as exc:
            raise CacheError(f"Redis SET {key} failed: {exc}") from exc
        self._count('sets')
        return True

    def delete(self, key: str) -> bool:
        try:
            deleted = self._client.delete(self._key(key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis DEL {key} failed: {exc}") from exc
        if deleted:
            self._count('deletes')
        return bool(deleted)

    def invalidate_pattern(self, pattern: str) -> int:
        try:
            keys = [key for key in self._client.scan_iter(match=self._key(pattern))
                    if key != self._generation_key]
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as exc:
            raise CacheError(f"Redis invalidation of {pattern} failed: {exc}") from exc
        self._count('invalidations', len(keys))
        return len(keys)

    def clear(self) -> int:
        return self.invalidate_pattern("*")

    def get_metrics(self) -> Dict[str, Any]:
        try:
            size = sum(1 for key in self._client.scan_iter(match=self._key("*"))
                       if key != self._generation_key)
        except redis.RedisError as exc:
            raise CacheError(f"Redis SCAN failed: {exc}") from exc
        with self._lock:
            return self._metrics.snapshot(size, "redis")

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = CacheMetrics()

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as exc:
            logger.warning(f"Error closing Redis client: {exc}")


class FailSafeCache(CacheBackend):
    """
    Wraps a backend so CacheError never reaches the caller.

    Reads degrade to misses and writes or invalidations become no-ops; every
    swallowed failure is logged. Correctness only depends on the store.
    """

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    def _guard(self, operation: str, key: str, call: Callable[[], Any], default: Any) -> Any:
        try:
            return call()
        except CacheError as exc:
            logger.warning(f"Cache {operation} failed for {key}: {exc}")
            return default

    def get(self, key: str) -> Optional[Any]:
        return self._guard('get', key, lambda: self.backend.get(key), None)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._guard('set', key, lambda: self.backend.set(key, value, ttl_seconds), None)

    def generation(self) -> Optional[int]:
        """None when the backend is unreachable; callers then skip filling"""
        return self._guard('generation', '*', self.backend.generation, None)

    def bump_generation(self) -> Optional[int]:
        return self._guard('bump_generation', '*', self.backend.bump_generation, None)

    def set_if_generation(self, key: str, value: Any, generation: int,
                          ttl_seconds: Optional[float] = None) -> bool:
        return self._guard(
            'set', key,
            lambda: self.backend.set_if_generation(key, value, generation, ttl_seconds),
            False
        )

    def delete(self, key: str) -> bool:
        return self._guard('delete', key, lambda: self.backend.delete(key), False)

    def invalidate_pattern(self, pattern: str) -> int:
        return self._guard('invalidate', pattern, lambda: self.backend.invalidate_pattern(pattern), 0)

    def clear(self) -> int:
        return self._guard('clear', '*', self.backend.clear, 0)

    def get_metrics(self) -> Dict[str, Any]:
        return self._guard('metrics', '*', self.backend.get_metrics, {})

    def reset_metrics(self) -> None:
        self._guard('reset_metrics', '*', self.backend.reset_metrics, None)

    def close(self) -> None:
        self.backend.close()


def fail_safe(cache: CacheBackend) -> CacheBackend:
    """Wrap a backend in FailSafeCache unless it already is one"""
    return cache if isinstance(cache, FailSafeCache) else FailSafeCache(cache)


def invalidate_certificate(cache: CacheBackend, cdt_id: str, owner_id: str) -> None:
    """Drop every cached projection that could contain the certificate"""
    # Bump before deleting so a concurrent reader cannot write back a stale projection
    cache.bump_generation()
    cache.delete(CacheKeys.certificate(cdt_id))
    cache.invalidate_pattern(CacheKeys.user_pattern(owner_id))
    cache.invalidate_pattern(CacheKeys.ALL_PATTERN)
    cache.delete(CacheKeys.PENDING)
    cache.delete(CacheKeys.ADMIN_STATS)


def create_cache(backend: str = "memory", redis_url: Optional[str] = None,
                 key_prefix: str = "cdt-core:", default_ttl_seconds: float = 300) -> CacheBackend:
    """Create a cache backend by name"""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryCache(default_ttl_seconds=default_ttl_seconds)
    if backend == "redis":
        logger.info("Using Redis cache backend")
        return RedisCache(redis_url=redis_url, key_prefix=key_prefix,
                          default_ttl_seconds=default_ttl_seconds)
    raise ValueError(f"Unknown cache backend '{backend}'")

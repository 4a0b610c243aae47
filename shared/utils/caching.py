"""
Caching utilities for the business-context analysis library.

This module provides an in-process LRU/TTL cache reachable from every
pipeline component, a manager of named caches, deterministic cache keys
and a ``cache_result`` decorator.

Races between concurrent analyses may recompute the same value twice;
the cache never promises more than "last write wins".
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class CacheStats:
    """Cache performance statistics."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheEntry(BaseModel):
    """Cache entry with metadata."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    value: Any
    created_at: datetime = Field(default_factory=datetime.utcnow)
    accessed_at: datetime = Field(default_factory=datetime.utcnow)
    ttl_seconds: Optional[float] = None
    access_count: int = 0

    @property
    def is_expired(self) -> bool:
        if self.ttl_seconds is None:
            return False
        return datetime.utcnow() > self.created_at + timedelta(seconds=self.ttl_seconds)

    def touch(self) -> None:
        """Update access time and count."""
        self.accessed_at = datetime.utcnow()
        self.access_count += 1


class BaseCache(ABC):
    """Abstract base class for cache implementations."""

    def __init__(self, max_size: int = 1000, default_ttl: float = 3600):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.stats = CacheStats()
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def lookup(self, key: str) -> Tuple[Any, bool]:
        """Return ``(value, found)``; a stored ``None`` is still found."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value with an optional TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete value by key."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all cache entries."""

    async def get(self, key: str) -> Optional[Any]:
        value, _ = await self.lookup(key)
        return value

    def get_stats(self) -> CacheStats:
        return self.stats


class MemoryCache(BaseCache):
    """In-memory cache implementation with LRU eviction."""

    def __init__(self, max_size: int = 1000, default_ttl: float = 3600):
        super().__init__(max_size, default_ttl)
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def lookup(self, key: str) -> Tuple[Any, bool]:
        async with self._lock:
            return self.lookup_sync(key)

    def lookup_sync(self, key: str) -> Tuple[Any, bool]:
        """Synchronous lookup for non-async contexts."""
        entry = self._cache.get(key)
        if entry is None:
            self.stats.misses += 1
            return None, False

        if entry.is_expired:
            del self._cache[key]
            self.stats.misses += 1
            self.stats.evictions += 1
            return None, False

        entry.touch()
        self.stats.hits += 1
        return entry.value, True

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self.set_sync(key, value, ttl)

    def set_sync(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Synchronous set for non-async contexts."""
        if len(self._cache) >= self.max_size and key not in self._cache:
            self._evict_lru()

        self._cache[key] = CacheEntry(
            key=key,
            value=value,
            ttl_seconds=ttl if ttl is not None else self.default_ttl
        )
        self.stats.sets += 1

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                self.stats.deletes += 1
                return True
            return False

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    def keys(self) -> List[str]:
        return list(self._cache.keys())

    def __len__(self) -> int:
        return len(self._cache)

    async def cleanup_expired(self) -> int:
        """Remove expired entries."""
        async with self._lock:
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired]
            for key in expired_keys:
                del self._cache[key]
                self.stats.evictions += 1
        return len(expired_keys)

    def _evict_lru(self) -> None:
        """Evict least recently used entry."""
        if not self._cache:
            return
        lru_key = min(self._cache.keys(), key=lambda k: self._cache[k].accessed_at)
        del self._cache[lru_key]
        self.stats.evictions += 1


class CacheManager:
    """Registry of named caches shared by all components."""

    def __init__(self):
        self.caches: Dict[str, BaseCache] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

        self.register_cache('memory', MemoryCache(max_size=1000, default_ttl=3600))
        self.register_cache('profiles', MemoryCache(max_size=500, default_ttl=1800))
        self.register_cache('short_term', MemoryCache(max_size=500, default_ttl=300))

    def register_cache(self, name: str, cache: BaseCache) -> None:
        self.caches[name] = cache
        self.logger.debug(f"Registered cache: {name}")

    def get_cache(self, name: str = 'memory') -> Optional[BaseCache]:
        return self.caches.get(name)

    async def cleanup_all_expired(self) -> int:
        total_cleaned = 0
        for name, cache in self.caches.items():
            if isinstance(cache, MemoryCache):
                cleaned = await cache.cleanup_expired()
                total_cleaned += cleaned
                if cleaned > 0:
                    self.logger.debug(f"Cleaned {cleaned} expired entries from {name} cache")
        return total_cleaned


_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    """Get global cache manager instance."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager()
    return _cache_manager


def reset_cache_manager() -> None:
    """Drop the global cache manager (used by tests)."""
    global _cache_manager
    _cache_manager = None


def hash_question(question: str) -> str:
    """Stable hash of a normalized question."""
    normalized = " ".join((question or "").lower().split())
    return hashlib.sha256(normalized.encode('utf-8')).hexdigest()[:32]


def generate_cache_key(operation: str, question_hash: str = "", **params: Any) -> str:
    """
    Deterministic key for ``(operation, question_hash, params)``.

    Parameters are serialized as canonical JSON so keyword order never
    changes the key.
    """
    key_data = {
        'operation': operation,
        'question': question_hash,
        'params': params,
    }
    key_str = json.dumps(key_data, default=str, sort_keys=True)
    return f"{operation}:{hashlib.md5(key_str.encode()).hexdigest()}"


def cache_result(ttl: float = 3600, cache_name: str = 'memory', key_prefix: Optional[str] = None):
    """
    Decorator to cache async function results.

    Args:
        ttl: Time to live in seconds
        cache_name: Name of cache to use
        key_prefix: Optional prefix for cache key
    """
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("cache_result only decorates coroutine functions")

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            cache = get_cache_manager().get_cache(cache_name)
            if cache is None:
                return await func(*args, **kwargs)

            cache_key = generate_cache_key(
                key_prefix or func.__qualname__,
                args=[str(a) for a in args],
                **{k: str(v) for k, v in kwargs.items()}
            )
            value, found = await cache.lookup(cache_key)
            if found:
                return value

            result = await func(*args, **kwargs)
            await cache.set(cache_key, result, ttl=ttl)
            return result

        return async_wrapper

    return decorator

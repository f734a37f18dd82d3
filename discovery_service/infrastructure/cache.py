"""
Result cache for Discovery Service

Holds fully ranked result sets keyed by the normalized query. Pagination is
applied on read, so every page of a query shares one entry.
"""
import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, List, Optional

import redis.asyncio as redis

from ..config import settings
from ..domain.models import CacheEntry, ScoredResult, SearchQuery
from ..exceptions import CacheError

logger = logging.getLogger(__name__)


def make_cache_key(query: SearchQuery) -> str:
    """Stable hash of normalized text, sorted entity types, filters and sort order"""
    payload = {
        "text": query.normalized_text,
        "types": sorted(entity_type.value for entity_type in query.entity_types),
        "filters": query.filters.normalized(),
        "sort_by": query.sort_by.value,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ResultCache(ABC):
    """Cache interface shared by the in-process and Redis stores"""

    @abstractmethod
    async def get(self, key: str) -> Optional[List[ScoredResult]]:
        """Return the cached ranked set, or None on a miss or expired entry"""
        pass

    @abstractmethod
    async def set(self, key: str, results: List[ScoredResult]) -> None:
        """Store a ranked set for the configured TTL"""
        pass

    @abstractmethod
    async def invalidate(self, key: str) -> bool:
        """Drop one entry; True if it existed"""
        pass

    @abstractmethod
    async def clear(self) -> int:
        """Drop every entry and return how many were removed"""
        pass

    async def start(self):
        pass

    async def stop(self):
        pass


class MemoryResultCache(ResultCache):
    """In-process TTL cache guarded by a single lock"""

    def __init__(
        self,
        ttl_seconds: int = 3600,
        max_entries: int = 10000,
        sweep_interval: int = 0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._timer = timer
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[List[ScoredResult]]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._timer()):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return list(entry.results)

    async def set(self, key: str, results: List[ScoredResult]) -> None:
        async with self._lock:
            now = self._timer()
            self._entries[key] = CacheEntry(
                key=key,
                results=tuple(results),
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self._entries.move_to_end(key)
            if len(self._entries) > self.max_entries:
                self._remove_expired(now)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def invalidate(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    async def sweep(self) -> int:
        """Remove expired entries eagerly"""
        async with self._lock:
            return self._remove_expired(self._timer())

    def _remove_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def start(self):
        """Start the background sweep when an interval is configured"""
        if self.sweep_interval > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info(f"Cache sweeper started (every {self.sweep_interval}s)")

    async def stop(self):
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
            logger.info("Cache sweeper stopped")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = await self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired cache entries")


class RedisResultCache(ResultCache):
    """Redis-backed cache; SETEX gives atomic write-with-expiry"""

    KEY_PREFIX = "search:results:"

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: int = 3600):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def start(self):
        """Connect to Redis"""
        if self.client is not None:
            return
        try:
            self.client = redis.from_url(
                f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}",
                password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
                encoding="utf-8",
                decode_responses=True,
            )
            await self.client.ping()
            logger.info("Redis cache connected successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.client = None

    async def stop(self):
        """Disconnect from Redis"""
        if self.client:
            await self.client.close()
            logger.info("Redis cache disconnected")

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise CacheError("Redis cache is not connected")
        return self.client

    async def get(self, key: str) -> Optional[List[ScoredResult]]:
        client = self._require_client()
        try:
            data = await client.get(self._key(key))
        except Exception as e:
            raise CacheError(f"Failed to read cache entry: {e}") from e
        if not data:
            return None
        try:
            return [ScoredResult.from_dict(item) for item in json.loads(data)]
        except (ValueError, KeyError, TypeError) as e:
            raise CacheError(f"Corrupt cache entry {key}: {e}") from e

    async def set(self, key: str, results: List[ScoredResult]) -> None:
        client = self._require_client()
        payload = json.dumps([result.to_dict() for result in results])
        try:
            await client.setex(self._key(key), self.ttl_seconds, payload)
        except Exception as e:
            raise CacheError(f"Failed to write cache entry: {e}") from e

    async def invalidate(self, key: str) -> bool:
        client = self._require_client()
        try:
            return await client.delete(self._key(key)) > 0
        except Exception as e:
            raise CacheError(f"Failed to invalidate cache entry: {e}") from e

    async def clear(self) -> int:
        client = self._require_client()
        removed = 0
        try:
            async for name in client.scan_iter(match=f"{self.KEY_PREFIX}*"):
                removed += await client.delete(name)
        except Exception as e:
            raise CacheError(f"Failed to clear cache: {e}") from e
        return removed

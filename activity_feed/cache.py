"""
Query cache in front of the feed aggregation backend.

Keys are (viewer or 'anon', filter, offset); every entry lives for the same
fixed TTL. Entries are never updated in place and never invalidated by live
events: an item pushed over the real-time channel can show up before it
appears in a cached page, until that page's TTL runs out. clear() wipes the
whole cache (logout / context switch).

Two backends:
  MemoryQueryCache — per-process dict, the default
  RedisQueryCache  — shared across API replicas, JSON payload with EX ttl
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from pydantic import TypeAdapter

from activity_feed.config import settings
from activity_feed.schemas import ActivityItem, FeedFilter

logger = logging.getLogger(__name__)

_ITEMS = TypeAdapter(list[ActivityItem])


@dataclass(frozen=True)
class FeedQueryKey:
    viewer_id: Optional[str]
    filter: FeedFilter
    offset: int = 0

    def __str__(self) -> str:
        return f"feed_{self.viewer_id or 'anon'}_{FeedFilter(self.filter).value}_{self.offset}"


@dataclass(frozen=True)
class CacheEntry:
    data: tuple[ActivityItem, ...]
    expires: float


class QueryCache(Protocol):
    ttl: float

    async def get(self, key: FeedQueryKey) -> Optional[list[ActivityItem]]: ...

    async def put(self, key: FeedQueryKey, data: Sequence[ActivityItem]) -> None: ...

    async def clear(self) -> None: ...


class MemoryQueryCache:
    # Each read/write below is a single step with no await in between, so
    # concurrent coroutines on one event loop can't interleave inside them.

    def __init__(
        self,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl if ttl is not None else settings.feed_cache_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: FeedQueryKey) -> Optional[list[ActivityItem]]:
        entry = self._entries.get(str(key))
        if entry is None:
            return None
        if self._clock() > entry.expires:
            self._entries.pop(str(key), None)
            return None
        return list(entry.data)

    async def put(self, key: FeedQueryKey, data: Sequence[ActivityItem]) -> None:
        self._entries[str(key)] = CacheEntry(
            data=tuple(data), expires=self._clock() + self.ttl
        )

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisQueryCache:
    """
    Redis STRING per page, keyed {prefix}:{feed_key}, value = JSON list of
    items. Expiry is left to Redis (SET ... EX ttl).
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl: Optional[float] = None,
        prefix: Optional[str] = None,
    ) -> None:
        self._redis = redis
        self.ttl = ttl if ttl is not None else settings.feed_cache_ttl_seconds
        self.prefix = prefix or settings.redis_cache_prefix

    def _key(self, key: FeedQueryKey) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: FeedQueryKey) -> Optional[list[ActivityItem]]:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as exc:
            logger.warning("Feed cache read failed (%s): %s — treating as miss", key, exc)
            return None
        if raw is None:
            return None
        try:
            return _ITEMS.validate_json(raw)
        except ValueError as exc:
            # Treat an unreadable entry as a miss; the next put overwrites it
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            return None

    async def put(self, key: FeedQueryKey, data: Sequence[ActivityItem]) -> None:
        payload = json.dumps([item.model_dump(mode="json") for item in data])
        try:
            await self._redis.set(self._key(key), payload, ex=max(1, int(self.ttl)))
        except RedisError as exc:
            logger.warning("Feed cache write failed (%s): %s", key, exc)

    async def clear(self) -> None:
        try:
            keys = [k async for k in self._redis.scan_iter(match=f"{self.prefix}:feed_*")]
            if keys:
                await self._redis.delete(*keys)
        except RedisError as exc:
            # Entries left behind still expire on their own TTL
            logger.warning("Feed cache clear failed: %s", exc)
            return
        logger.debug("Cleared %d cached feed pages", len(keys))


def create_cache(redis: Optional[aioredis.Redis] = None) -> QueryCache:
    if settings.feed_cache_backend == "redis":
        if redis is None:
            redis = aioredis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                decode_responses=True,
            )
        return RedisQueryCache(redis)
    return MemoryQueryCache()

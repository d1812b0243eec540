import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from activity_feed.cache import FeedQueryKey, RedisQueryCache
from activity_feed.schemas import FeedFilter

from conftest import make_item


def test_key_uses_anon_for_signed_out_viewers():
    assert str(FeedQueryKey(None, FeedFilter.ALL)) == "feed_anon_all_0"
    assert str(FeedQueryKey("user-a", FeedFilter.FRIENDS, 50)) == "feed_user-a_friends_50"


@pytest.mark.asyncio
async def test_put_then_get_within_ttl(cache, clock):
    key = FeedQueryKey("user-a", FeedFilter.ALL)
    items = [make_item("s1"), make_item("s2", minutes_ago=5)]

    await cache.put(key, items)
    clock.now[0] += 119

    assert await cache.get(key) == items


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(cache, clock):
    key = FeedQueryKey("user-a", FeedFilter.ALL)
    await cache.put(key, [make_item("s1")])

    clock.now[0] += 121

    assert await cache.get(key) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_keys_are_isolated_by_filter_and_offset(cache):
    await cache.put(FeedQueryKey("user-a", FeedFilter.ALL, 0), [make_item("s1")])

    assert await cache.get(FeedQueryKey("user-a", FeedFilter.FRIENDS, 0)) is None
    assert await cache.get(FeedQueryKey("user-a", FeedFilter.ALL, 50)) is None
    assert await cache.get(FeedQueryKey(None, FeedFilter.ALL, 0)) is None


@pytest.mark.asyncio
async def test_clear_is_idempotent(cache):
    await cache.put(FeedQueryKey("user-a", FeedFilter.ALL), [make_item("s1")])

    await cache.clear()
    await cache.clear()

    assert len(cache) == 0
    assert await cache.get(FeedQueryKey("user-a", FeedFilter.ALL)) is None


@pytest.mark.asyncio
async def test_cached_list_is_a_copy(cache):
    key = FeedQueryKey("user-a", FeedFilter.ALL)
    await cache.put(key, [make_item("s1")])

    first = await cache.get(key)
    first.append(make_item("s2"))

    assert len(await cache.get(key)) == 1


# ── Redis backend ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redis_put_writes_json_with_expiry():
    redis = AsyncMock()
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    await cache.put(FeedQueryKey("user-a", FeedFilter.ALL), [make_item("s1")])

    args, kwargs = redis.set.call_args
    assert args[0] == "af:feed_user-a_all_0"
    assert json.loads(args[1])[0]["activity_id"] == "s1"
    assert kwargs["ex"] == 120


@pytest.mark.asyncio
async def test_redis_get_reads_back_items():
    item = make_item("s1")
    redis = AsyncMock()
    redis.get.return_value = json.dumps([item.model_dump(mode="json")])
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    assert await cache.get(FeedQueryKey("user-a", FeedFilter.ALL)) == [item]


@pytest.mark.asyncio
async def test_redis_outage_is_a_miss():
    redis = AsyncMock()
    redis.get.side_effect = RedisConnectionError("down")
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    assert await cache.get(FeedQueryKey("user-a", FeedFilter.ALL)) is None


@pytest.mark.asyncio
async def test_redis_unreadable_entry_is_a_miss():
    redis = AsyncMock()
    redis.get.return_value = "not json"
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    assert await cache.get(FeedQueryKey("user-a", FeedFilter.ALL)) is None


@pytest.mark.asyncio
async def test_redis_clear_deletes_only_feed_keys():
    async def scan_iter(match):
        assert match == "af:feed_*"
        for key in ("af:feed_anon_all_0", "af:feed_user-a_all_0"):
            yield key

    redis = MagicMock()
    redis.scan_iter = scan_iter
    redis.delete = AsyncMock()
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    await cache.clear()

    redis.delete.assert_awaited_once_with("af:feed_anon_all_0", "af:feed_user-a_all_0")


@pytest.mark.asyncio
async def test_redis_outage_during_clear_is_tolerated():
    async def scan_iter(match):
        raise RedisConnectionError("redis down")
        yield  # pragma: no cover

    redis = MagicMock()
    redis.scan_iter = scan_iter
    redis.delete = AsyncMock()
    cache = RedisQueryCache(redis, ttl=120, prefix="af")

    await cache.clear()

    redis.delete.assert_not_awaited()

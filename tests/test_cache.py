import asyncio

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from discovery_service.domain.models import (
    EntityType,
    Pagination,
    ScoredResult,
    SearchFilters,
    SearchQuery,
    SortBy,
)
from discovery_service.exceptions import CacheError
from discovery_service.infrastructure.cache import RedisResultCache, make_cache_key

from factories import TORONTO, event, venue


def ranked():
    return [
        ScoredResult(
            candidate=event("e1", "Summer Music Festival", days=3, tags=("outdoor",), coordinates=TORONTO),
            relevance_score=14.57,
            highlights=("**Summer Music Festival**",),
            distance_km=1.25,
            match_count=1,
        ),
        ScoredResult(candidate=venue("v1", "Music Hall", city="Toronto"), relevance_score=10.0),
    ]


def test_cache_key_normalizes_text_and_type_order():
    a = SearchQuery(text="  Music   Festival ", entity_types=frozenset({EntityType.EVENT, EntityType.VENUE}))
    b = SearchQuery(text="music festival", entity_types=frozenset({EntityType.VENUE, EntityType.EVENT}))
    assert make_cache_key(a) == make_cache_key(b)


def test_cache_key_depends_on_filters_and_sort():
    base = SearchQuery(text="music")
    assert make_cache_key(base) != make_cache_key(
        SearchQuery(text="music", filters=SearchFilters(category="Jazz"))
    )
    assert make_cache_key(base) != make_cache_key(SearchQuery(text="music", sort_by=SortBy.DATE))


def test_cache_key_ignores_pagination():
    assert make_cache_key(SearchQuery(text="music")) == make_cache_key(
        SearchQuery(text="music", pagination=Pagination(limit=5, offset=10))
    )


@pytest.mark.asyncio
async def test_memory_cache_round_trip(cache):
    await cache.set("k", ranked())
    assert await cache.get("k") == ranked()


@pytest.mark.asyncio
async def test_memory_cache_expires_lazily(cache, timer):
    await cache.set("k", ranked())
    timer.advance(3599)
    assert await cache.get("k") is not None

    timer.advance(1)
    assert await cache.get("k") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_memory_cache_sweep_removes_expired(cache, timer):
    await cache.set("old", ranked())
    timer.advance(1800)
    await cache.set("new", ranked())
    timer.advance(1800)

    assert await cache.sweep() == 1
    assert len(cache) == 1
    assert await cache.get("new") is not None


@pytest.mark.asyncio
async def test_memory_cache_evicts_least_recently_used(cache):
    cache.max_entries = 2
    await cache.set("a", ranked())
    await cache.set("b", ranked())
    await cache.get("a")
    await cache.set("c", ranked())

    assert await cache.get("b") is None
    assert await cache.get("a") is not None
    assert await cache.get("c") is not None


@pytest.mark.asyncio
async def test_memory_cache_invalidate_and_clear(cache):
    await cache.set("a", ranked())
    await cache.set("b", ranked())

    assert await cache.invalidate("a") is True
    assert await cache.invalidate("a") is False
    assert await cache.clear() == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_memory_cache_concurrent_writers(cache):
    await asyncio.gather(*(cache.set(f"k{i}", ranked()) for i in range(50)))
    assert len(cache) == 50


@pytest_asyncio.fixture
async def redis_cache():
    client = FakeRedis(decode_responses=True)
    try:
        yield RedisResultCache(client=client, ttl_seconds=60)
    finally:
        await client.flushall()


@pytest.mark.asyncio
async def test_redis_cache_round_trip_with_ttl(redis_cache):
    await redis_cache.set("k", ranked())

    assert await redis_cache.get("k") == ranked()
    ttl = await redis_cache.client.ttl(f"{RedisResultCache.KEY_PREFIX}k")
    assert 0 < ttl <= 60


@pytest.mark.asyncio
async def test_redis_cache_miss_returns_none(redis_cache):
    assert await redis_cache.get("missing") is None


@pytest.mark.asyncio
async def test_redis_cache_corrupt_entry_raises_cache_error(redis_cache):
    await redis_cache.client.set(f"{RedisResultCache.KEY_PREFIX}bad", "{not json")
    with pytest.raises(CacheError):
        await redis_cache.get("bad")


@pytest.mark.asyncio
async def test_redis_cache_clear_only_touches_own_keys(redis_cache):
    await redis_cache.set("a", ranked())
    await redis_cache.set("b", ranked())
    await redis_cache.client.set("unrelated", "1")

    assert await redis_cache.clear() == 2
    assert await redis_cache.client.get("unrelated") == "1"


@pytest.mark.asyncio
async def test_redis_cache_without_client_raises_cache_error():
    with pytest.raises(CacheError):
        await RedisResultCache(client=None).get("k")

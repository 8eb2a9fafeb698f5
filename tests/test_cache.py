"""
投资缓存层测试

覆盖范围：
  - 缓存键格式
  - 新鲜命中 / 过期命中后台刷新 / 作废后同步拉取
  - 拉取失败时返回旧值
  - LRU 容量上限与淘汰统计
  - 按前缀失效、清空、统计重置、刷新队列
  - 同键并发未命中共享一次拉取
  - 无 Redis 时的直通模式
"""

import asyncio
import logging

import pytest

from conftest import FakeClock, FakeRedis
from invest_service.layers.cache import (
    CACHE_PREFIX,
    LRU_ORDER_KEY,
    CacheKeys,
    InvestingCache,
)

HOUR = 60 * 60


class Counter:
    """记录调用次数的 fetch_fn"""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        value = self.values[min(self.calls, len(self.values)) - 1]
        if isinstance(value, Exception):
            raise value
        return value


def _cache(redis=None, clock=None, **kwargs) -> InvestingCache:
    return InvestingCache(
        redis if redis is not None else FakeRedis(),
        clock=clock or FakeClock(),
        **kwargs,
    )


class TestCacheKeys:
    def test_namespaces(self):
        assert CacheKeys.search("  AAPL ") == "search:aapl"
        assert CacheKeys.quote("aapl") == "quote:AAPL"
        assert CacheKeys.prices("aapl") == "prices:AAPL:ALL:LATEST:5000"
        assert CacheKeys.prices("msft", "2024-01-01", "2024-02-01", 30) == "prices:MSFT:2024-01-01:2024-02-01:30"
        assert CacheKeys.eod("spy", "2024-03-01") == "eod:SPY:2024-03-01"
        assert CacheKeys.manual_latest("m1") == "manual-latest:m1"
        assert CacheKeys.portfolio_summary("u1") == "portfolio:u1:summary"
        assert CacheKeys.portfolio_chart("u1", "1M") == "portfolio:u1:chart:1M"
        assert CacheKeys.portfolio_benchmark("u1", "spy", "1Y") == "portfolio:u1:benchmark:SPY:1Y"

    def test_portfolio_keys_share_prefix(self):
        prefix = CacheKeys.portfolio_prefix("u1")
        for key in (
            CacheKeys.portfolio_summary("u1"),
            CacheKeys.portfolio_chart("u1", "1W"),
            CacheKeys.portfolio_benchmark("u1", "SPY", "1W"),
        ):
            assert key.startswith(prefix)
        assert not CacheKeys.portfolio_summary("u10").startswith(prefix)


class TestFreshness:
    def test_fresh_hit_skips_fetch(self):
        async def run():
            cache = _cache()
            fetch = Counter({"v": 1}, {"v": 2})
            first = await cache.get_or_fetch("k", fetch, ttl=HOUR)
            second = await cache.get_or_fetch("k", fetch, ttl=HOUR)
            return first, second, fetch.calls, await cache.get_stats()

        first, second, calls, stats = asyncio.run(run())
        assert first == second == {"v": 1}
        assert calls == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1
        assert stats["hit_rate"] == pytest.approx(0.5)

    def test_stale_entry_served_then_refreshed(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock)
            fetch = Counter("old", "new")
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(2 * HOUR)
            served = await cache.get_or_fetch("k", fetch, ttl=HOUR)
            calls_when_served = fetch.calls
            await cache.wait_for_refreshes()
            after = await cache.get_or_fetch("k", fetch, ttl=HOUR)
            return served, calls_when_served, after, fetch.calls, await cache.get_stats()

        served, calls_when_served, after, calls, stats = asyncio.run(run())
        assert served == "old"
        assert calls_when_served == 1
        assert after == "new"
        assert calls == 2
        assert stats["hits"] == 2
        assert stats["misses"] == 1

    def test_one_background_refresh_per_key(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock)
            fetch = Counter("old", "new", "newer")
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(2 * HOUR)
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            await cache.wait_for_refreshes()
            return fetch.calls

        assert asyncio.run(run()) == 2

    def test_zero_stale_threshold_refetches_synchronously(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock, stale_threshold=0)
            fetch = Counter("old", "new")
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(2 * HOUR)
            return await cache.get_or_fetch("k", fetch, ttl=HOUR), fetch.calls

        assert asyncio.run(run()) == ("new", 2)

    def test_entry_past_stale_threshold_is_refetched(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock)
            fetch = Counter("old", "new")
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(49 * HOUR)
            value = await cache.get_or_fetch("k", fetch, ttl=HOUR)
            return value, await cache.get_stats()

        value, stats = asyncio.run(run())
        assert value == "new"
        assert stats["misses"] == 2

    def test_failed_fetch_falls_back_to_stale_value(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock)
            fetch = Counter("old", RuntimeError("provider down"))
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(72 * HOUR)
            return await cache.get_or_fetch("k", fetch, ttl=HOUR)

        assert asyncio.run(run()) == "old"

    def test_failed_fetch_without_entry_raises(self):
        async def run():
            cache = _cache()
            await cache.get_or_fetch("k", Counter(RuntimeError("provider down")))

        with pytest.raises(RuntimeError, match="provider down"):
            asyncio.run(run())

    def test_failed_background_refresh_keeps_old_value(self, caplog):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock)
            fetch = Counter("old", RuntimeError("provider down"))
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            clock.advance(2 * HOUR)
            await cache.get_or_fetch("k", fetch, ttl=HOUR)
            await cache.wait_for_refreshes()
            return await cache.get_or_fetch("k", Counter("unused"), ttl=10 * HOUR)

        with caplog.at_level(logging.ERROR, logger="invest_service.layers.cache"):
            assert asyncio.run(run()) == "old"
        assert "后台刷新失败" in caplog.text

    def test_concurrent_misses_share_one_fetch(self):
        async def run():
            cache = _cache()
            fetch = Counter("value")
            results = await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(5)))
            return results, fetch.calls

        results, calls = asyncio.run(run())
        assert results == ["value"] * 5
        assert calls == 1


class TestLruBound:
    def test_size_never_exceeds_max_entries(self):
        async def run():
            clock = FakeClock()
            redis = FakeRedis()
            cache = _cache(redis, clock, max_entries=3)
            for i in range(5):
                clock.advance(1)
                await cache.get_or_fetch(f"k{i}", Counter(i))
            return redis, await cache.get_stats()

        redis, stats = asyncio.run(run())
        assert stats["size"] == 3
        assert stats["evictions"] == 2
        assert set(redis.zsets[LRU_ORDER_KEY]) == {f"{CACHE_PREFIX}k{i}" for i in (2, 3, 4)}
        assert f"{CACHE_PREFIX}k0" not in redis.strings

    def test_recently_read_entry_survives_eviction(self):
        async def run():
            clock = FakeClock()
            redis = FakeRedis()
            cache = _cache(redis, clock, max_entries=2)
            await cache.get_or_fetch("a", Counter("a"))
            clock.advance(1)
            await cache.get_or_fetch("b", Counter("b"))
            clock.advance(1)
            await cache.get_or_fetch("a", Counter("unused"))
            clock.advance(1)
            await cache.get_or_fetch("c", Counter("c"))
            return set(redis.zsets[LRU_ORDER_KEY])

        assert asyncio.run(run()) == {f"{CACHE_PREFIX}a", f"{CACHE_PREFIX}c"}

    def test_rewriting_existing_key_does_not_evict(self):
        async def run():
            clock = FakeClock()
            cache = _cache(clock=clock, max_entries=2)
            await cache.get_or_fetch("a", Counter("a"), ttl=10)
            await cache.get_or_fetch("b", Counter("b"), ttl=10)
            clock.advance(11)
            await cache.get_or_fetch("a", Counter("a2"), ttl=10)
            await cache.wait_for_refreshes()
            return await cache.get_stats()

        stats = asyncio.run(run())
        assert stats["size"] == 2
        assert stats["evictions"] == 0


class TestInvalidation:
    def test_invalidate_single_key(self):
        async def run():
            cache = _cache()
            fetch = Counter("one", "two")
            await cache.get_or_fetch("k", fetch)
            await cache.invalidate("k")
            return await cache.get_or_fetch("k", fetch), (await cache.get_stats())["size"]

        value, size = asyncio.run(run())
        assert value == "two"
        assert size == 1

    def test_invalidate_pattern_matches_prefix_only(self):
        async def run():
            cache = _cache()
            for key in (
                CacheKeys.portfolio_summary("u1"),
                CacheKeys.portfolio_chart("u1", "1M"),
                CacheKeys.portfolio_summary("u10"),
                CacheKeys.quote("AAPL"),
            ):
                await cache.get_or_fetch(key, Counter(key))
            removed = await cache.invalidate_pattern(CacheKeys.portfolio_prefix("u1"))
            return removed, await cache.get_stats()

        removed, stats = asyncio.run(run())
        assert removed == 2
        assert stats["size"] == 2

    def test_clear_all_and_reset_stats(self):
        async def run():
            cache = _cache()
            await cache.get_or_fetch("a", Counter(1), tag="AAPL")
            await cache.get_or_fetch("a", Counter(1))
            await cache.reset_stats()
            after_reset = await cache.get_stats()
            await cache.clear_all()
            return after_reset, await cache.get_stats(), await cache.get_refresh_queue()

        after_reset, after_clear, queue = asyncio.run(run())
        assert after_reset["hits"] == 0 and after_reset["misses"] == 0
        assert after_reset["size"] == 1
        assert after_clear["size"] == 0
        assert queue == []

    def test_refresh_queue_collects_tags(self):
        async def run():
            cache = _cache()
            await cache.get_or_fetch("q1", Counter(1), tag="MSFT")
            await cache.get_or_fetch("q2", Counter(2), tag="AAPL")
            await cache.get_or_fetch("q3", Counter(3), tag="MSFT")
            await cache.get_or_fetch("q4", Counter(4))
            return await cache.get_refresh_queue()

        assert asyncio.run(run()) == ["AAPL", "MSFT"]


class TestPassthrough:
    def test_no_redis_calls_fetch_every_time(self):
        async def run():
            cache = InvestingCache(None)
            fetch = Counter("a", "b")
            first = await cache.get_or_fetch("k", fetch)
            second = await cache.get_or_fetch("k", fetch)
            removed = await cache.invalidate_pattern("k")
            return first, second, removed, await cache.get_stats(), cache.enabled

        first, second, removed, stats, enabled = asyncio.run(run())
        assert (first, second) == ("a", "b")
        assert removed == 0
        assert stats == {"hits": 0, "misses": 0, "evictions": 0, "size": 0, "hit_rate": 0.0}
        assert enabled is False

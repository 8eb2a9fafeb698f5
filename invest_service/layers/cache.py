"""
Layer 2 – 缓存层
Redis 上的投资数据缓存：LRU 淘汰（默认 1000 条）+ TTL + stale-while-revalidate

  新鲜（age < ttl）          → 命中，直接返回
  过期未作废（age < 48h）    → 命中，立即返回旧值并在后台刷新
  不存在 / 已作废            → 未命中，调用 fetch_fn 拉取并写入
  fetch_fn 失败              → 有旧值则返回旧值，否则向上抛出
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from invest_service.config import settings
from invest_service.errors import BackgroundRefreshFailure

logger = logging.getLogger(__name__)

CACHE_PREFIX = "invest:entry:"
LRU_ORDER_KEY = "invest:cache:lru"
STATS_KEY = "invest:cache:stats"
REFRESH_QUEUE_KEY = "invest:cache:refresh"

# 各类数据 TTL（秒）
CACHE_TTL: Dict[str, int] = {
    "search": 60 * 60 * 24,            # 代码搜索结果很少变化
    "quote": 60 * 60 * 24,             # EOD 报价每日更新
    "prices": 60 * 60 * 24,            # 历史价格不会变化
    "prices_recent": 60 * 60 * 4,      # 近一周数据可能被修正
    "eod": 60 * 60 * 24 * 7,           # 历史收盘价永久有效
    "portfolio_summary": 60 * 15,
    "portfolio_chart": 60 * 60,
    "portfolio_benchmark": 60 * 60,
}

FetchFn = Callable[[], Awaitable[Any]]


class CacheKeys:
    """缓存键构造（各命名空间互不冲突）"""

    @staticmethod
    def search(query: str) -> str:
        return f"search:{query.lower().strip()}"

    @staticmethod
    def quote(ticker: str) -> str:
        return f"quote:{ticker.upper()}"

    @staticmethod
    def prices(
        ticker: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        size: Optional[int] = None,
    ) -> str:
        return f"prices:{ticker.upper()}:{start or 'ALL'}:{end or 'LATEST'}:{size or 5000}"

    @staticmethod
    def eod(ticker: str, date: str) -> str:
        return f"eod:{ticker.upper()}:{date}"

    @staticmethod
    def portfolio_prefix(user_id: str) -> str:
        return f"portfolio:{user_id}:"

    @staticmethod
    def portfolio_summary(user_id: str) -> str:
        return f"portfolio:{user_id}:summary"

    @staticmethod
    def portfolio_chart(user_id: str, range_: str) -> str:
        return f"portfolio:{user_id}:chart:{range_}"

    @staticmethod
    def portfolio_benchmark(user_id: str, ticker: str, range_: str) -> str:
        return f"portfolio:{user_id}:benchmark:{ticker.upper()}:{range_}"

    @staticmethod
    def price_range(stock_id: str, start: str, end: str) -> str:
        return f"price-range:{stock_id}:{start}:{end}"

    @staticmethod
    def manual_latest(stock_id: str) -> str:
        return f"manual-latest:{stock_id}"

    @staticmethod
    def news(category: str) -> str:
        return f"news:{category}"

    @staticmethod
    def news_ticker(ticker: str) -> str:
        return f"news:ticker:{ticker.upper()}"


def _escape_glob(text: str) -> str:
    """转义 Redis glob 特殊字符，使前缀按字面匹配"""
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in text)


class InvestingCache:
    """
    通用 stale-while-revalidate 缓存

    后端只保证单键原子读写，不提供跨键事务；同一进程内对同一键的并发未命中
    共享一次拉取，跨进程的并发未命中各自拉取。
    redis 为 None 时退化为直通模式：每次调用 fetch_fn，不做任何记录。
    """

    def __init__(
        self,
        redis: Optional[Redis],
        max_entries: int = None,
        stale_threshold: int = None,
        default_ttl: int = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis
        self._max_entries = settings.CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._stale_threshold = settings.CACHE_STALE_THRESHOLD if stale_threshold is None else stale_threshold
        self._default_ttl = settings.CACHE_DEFAULT_TTL if default_ttl is None else default_ttl
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    # ── 读取 / 拉取 ───────────────────────────────────────

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: int = None,
        tag: Optional[str] = None,
    ) -> Any:
        """
        从缓存读取，未命中时调用 fetch_fn 拉取

        Args:
            key: 缓存键（不含前缀）
            fetch_fn: 无参协程函数，返回可 JSON 序列化的数据
            ttl: 新鲜期（秒），默认 24 小时
            tag: 可选标签（通常为股票代码），写入刷新队列
        """
        if ttl is None:
            ttl = self._default_ttl
        if self._redis is None:
            return await fetch_fn()

        full_key = self._full_key(key)
        entry = await self._read(full_key)

        if entry is not None:
            age = self._clock() - entry["created_at"]
            if age < ttl:
                await self._record("hits")
                await self._touch(full_key, entry)
                logger.debug(f"缓存命中: {full_key}")
                return entry["data"]
            if age < self._stale_threshold:
                await self._record("hits")
                self._schedule_refresh(full_key, fetch_fn, ttl, tag)
                logger.debug(f"缓存命中（过期，后台刷新）: {full_key}")
                return entry["data"]

        await self._record("misses")
        try:
            return await self._fetch_shared(full_key, fetch_fn, ttl, tag)
        except Exception as exc:
            stale = await self._read(full_key) or entry
            if stale is not None:
                logger.warning(f"拉取失败，返回旧缓存 {key}: {exc}")
                return stale["data"]
            raise

    async def _fetch_shared(
        self, full_key: str, fetch_fn: FetchFn, ttl: int, tag: Optional[str]
    ) -> Any:
        future = self._inflight.get(full_key)
        if future is None:
            future = asyncio.ensure_future(self._fetch_and_store(full_key, fetch_fn, ttl, tag))
            self._inflight[full_key] = future

            def _done(fut: asyncio.Future, key: str = full_key) -> None:
                if self._inflight.get(key) is fut:
                    del self._inflight[key]

            future.add_done_callback(_done)
        return await asyncio.shield(future)

    async def _fetch_and_store(
        self, full_key: str, fetch_fn: FetchFn, ttl: int, tag: Optional[str]
    ) -> Any:
        data = await fetch_fn()
        await self._write(full_key, data, ttl, tag)
        return data

    # ── 后台刷新 ──────────────────────────────────────────

    def _schedule_refresh(
        self, full_key: str, fetch_fn: FetchFn, ttl: int, tag: Optional[str]
    ) -> None:
        if full_key in self._refreshing:
            return
        task = asyncio.create_task(self._refresh(full_key, fetch_fn, ttl, tag))
        self._refreshing[full_key] = task

        def _done(t: asyncio.Task, key: str = full_key) -> None:
            if self._refreshing.get(key) is t:
                del self._refreshing[key]

        task.add_done_callback(_done)

    async def _refresh(
        self, full_key: str, fetch_fn: FetchFn, ttl: int, tag: Optional[str]
    ) -> None:
        try:
            data = await fetch_fn()
            await self._write(full_key, data, ttl, tag)
            logger.info(f"后台刷新完成: {full_key}")
        except Exception as exc:
            logger.error(str(BackgroundRefreshFailure(full_key, exc)))

    async def wait_for_refreshes(self) -> None:
        """等待当前所有后台刷新结束（关闭服务时使用）"""
        pending = list(self._refreshing.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ── 存储原语 ──────────────────────────────────────────

    def _full_key(self, key: str) -> str:
        if key.startswith(CACHE_PREFIX):
            return key
        return f"{CACHE_PREFIX}{key}"

    async def _read(self, full_key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._redis.get(full_key)
            if not raw:
                return None
            return json.loads(raw)
        except (RedisError, ValueError) as exc:
            logger.debug(f"缓存读取失败 {full_key}: {exc}")
            return None

    async def _write(self, full_key: str, data: Any, ttl: int, tag: Optional[str]) -> None:
        now = self._clock()
        entry = {
            "data": data,
            "created_at": now,
            "last_accessed_at": now,
            "ttl": ttl,
            "tag": tag,
        }
        try:
            await self._enforce_size_limit(full_key)
            await self._redis.set(full_key, json.dumps(entry, ensure_ascii=False, default=str))
            await self._redis.zadd(LRU_ORDER_KEY, {full_key: now})
            if tag:
                await self._redis.sadd(REFRESH_QUEUE_KEY, tag)
            logger.debug(f"缓存写入: {full_key}")
        except RedisError as exc:
            logger.warning(f"缓存写入失败 {full_key}: {exc}")

    async def _touch(self, full_key: str, entry: Dict[str, Any]) -> None:
        now = self._clock()
        entry["last_accessed_at"] = now
        try:
            await self._redis.set(full_key, json.dumps(entry, ensure_ascii=False, default=str))
            await self._redis.zadd(LRU_ORDER_KEY, {full_key: now})
        except RedisError as exc:
            logger.debug(f"更新访问时间失败 {full_key}: {exc}")

    async def _enforce_size_limit(self, full_key: str) -> None:
        """写入新键前按最近访问时间淘汰最旧条目"""
        if await self._redis.zscore(LRU_ORDER_KEY, full_key) is not None:
            return
        size = await self._redis.zcard(LRU_ORDER_KEY)
        if size < self._max_entries:
            return
        to_evict = size - self._max_entries + 1
        oldest = await self._redis.zrange(LRU_ORDER_KEY, 0, to_evict - 1)
        if not oldest:
            return
        await self._redis.delete(*oldest)
        await self._redis.zrem(LRU_ORDER_KEY, *oldest)
        await self._redis.hincrby(STATS_KEY, "evictions", len(oldest))
        logger.info(f"LRU 淘汰 {len(oldest)} 条缓存")

    async def _record(self, field: str) -> None:
        try:
            await self._redis.hincrby(STATS_KEY, field, 1)
        except RedisError as exc:
            logger.debug(f"缓存统计写入失败: {exc}")

    # ── 失效 / 管理 ───────────────────────────────────────

    async def invalidate(self, key: str) -> None:
        """删除单个缓存条目"""
        if self._redis is None:
            return
        full_key = self._full_key(key)
        await self._redis.delete(full_key)
        await self._redis.zrem(LRU_ORDER_KEY, full_key)

    async def invalidate_pattern(self, prefix: str) -> int:
        """删除所有以 prefix 开头的缓存条目，返回删除数量"""
        if self._redis is None:
            return 0
        match = f"{CACHE_PREFIX}{_escape_glob(prefix)}*"
        keys = [k async for k in self._redis.scan_iter(match=match)]
        if keys:
            await self._redis.delete(*keys)
            await self._redis.zrem(LRU_ORDER_KEY, *keys)
            logger.info(f"缓存失效 {prefix}*: {len(keys)} 条")
        return len(keys)

    async def clear_all(self) -> None:
        """清空所有缓存条目、LRU 索引、统计与刷新队列"""
        if self._redis is None:
            return
        keys = [k async for k in self._redis.scan_iter(match=f"{CACHE_PREFIX}*")]
        if keys:
            await self._redis.delete(*keys)
        await self._redis.delete(LRU_ORDER_KEY, STATS_KEY, REFRESH_QUEUE_KEY)
        logger.info(f"投资缓存已清空（{len(keys)} 条）")

    async def reset_stats(self) -> None:
        if self._redis is None:
            return
        await self._redis.delete(STATS_KEY)

    async def get_stats(self) -> Dict[str, Any]:
        """返回命中 / 未命中 / 淘汰计数、当前大小与命中率"""
        if self._redis is None:
            return {"hits": 0, "misses": 0, "evictions": 0, "size": 0, "hit_rate": 0.0}
        stats = await self._redis.hgetall(STATS_KEY)
        size = await self._redis.zcard(LRU_ORDER_KEY)
        hits = int(stats.get("hits", 0))
        misses = int(stats.get("misses", 0))
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "evictions": int(stats.get("evictions", 0)),
            "size": size,
            "hit_rate": hits / total if total > 0 else 0.0,
        }

    async def get_refresh_queue(self) -> List[str]:
        """返回曾经带标签写入的股票代码"""
        if self._redis is None:
            return []
        return sorted(await self._redis.smembers(REFRESH_QUEUE_KEY))


def get_investing_cache(request: Request) -> InvestingCache:
    """FastAPI 依赖：获取启动时创建的投资缓存"""
    return request.app.state.investing_cache

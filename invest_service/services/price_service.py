"""
价格聚合服务
按成本从低到高依次尝试：数据库（永久存储） → 投资缓存 → Twelve Data 接口，
接口新拉取的日线在后台回写数据库
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pandas as pd
from fastapi import Request

from invest_service.config import settings
from invest_service.errors import NotFound, PersistenceFailure
from invest_service.layers.acquisition import MAX_OUTPUT_SIZE, TwelveDataClient
from invest_service.layers.cache import CACHE_TTL, CacheKeys, InvestingCache
from invest_service.layers.persistence import MongoPortfolioStore, MongoPriceStore

logger = logging.getLogger(__name__)

_RANGE_OFFSETS = {
    "1D": pd.DateOffset(days=1),
    "1W": pd.DateOffset(days=7),
    "1M": pd.DateOffset(months=1),
    "3M": pd.DateOffset(months=3),
    "1Y": pd.DateOffset(years=1),
    "5Y": pd.DateOffset(years=5),
    "MAX": pd.DateOffset(years=20),
}
_DEFAULT_RANGE = "1Y"


class PriceService:
    """价格聚合：分层查询 + 限流拉取 + 回写"""

    def __init__(
        self,
        client: TwelveDataClient,
        cache: InvestingCache,
        price_store: Optional[MongoPriceStore] = None,
        portfolio_store: Optional[MongoPortfolioStore] = None,
        today: Callable[[], date] = date.today,
        sufficiency_days: int = None,
        recent_window_days: int = None,
    ):
        self._client = client
        self._cache = cache
        self._prices = price_store
        self._portfolio = portfolio_store
        self._today = today
        self._sufficiency_days = settings.DATA_SUFFICIENCY_DAYS if sufficiency_days is None else sufficiency_days
        self._recent_window_days = settings.RECENT_WINDOW_DAYS if recent_window_days is None else recent_window_days
        self._background: Set[asyncio.Task] = set()

    # ── 辅助判断 ──────────────────────────────────────────

    def is_data_sufficient(self, latest_date: Optional[str], end_date: Optional[str]) -> bool:
        """
        数据库中的数据是否足以直接回答查询

        最新日期 >= 请求结束日、或 >= 今天、或与结束日相差不足容忍天数
        （周末、节假日、结算延迟）。
        """
        if not latest_date:
            return False
        today = self._today().isoformat()
        end = end_date or today
        if latest_date >= end or latest_date >= today:
            return True
        gap = (date.fromisoformat(end) - date.fromisoformat(latest_date)).days
        return gap < self._sufficiency_days

    def prices_ttl(self, start_date: Optional[str]) -> int:
        """近期窗口（可能仍被修正）用短 TTL，其余用长 TTL"""
        recent_cutoff = self._today() - timedelta(days=self._recent_window_days)
        if not start_date or date.fromisoformat(start_date) >= recent_cutoff:
            return CACHE_TTL["prices_recent"]
        return CACHE_TTL["prices"]

    def get_date_range(self, range_: str) -> Tuple[str, str]:
        """将区间代码（1D/1W/1M/3M/1Y/5Y/MAX）转换为起止日期"""
        offset = _RANGE_OFFSETS.get(range_.upper(), _RANGE_OFFSETS[_DEFAULT_RANGE])
        end = pd.Timestamp(self._today())
        start = end - offset
        return start.strftime("%Y-%m-%d"), end.strftime("%Y-%m-%d")

    async def get_stock(self, stock_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """查询用户股票，不存在时抛出 NotFound"""
        stock = None
        if self._portfolio is not None:
            stock = await self._portfolio.get_stock(stock_id, user_id)
        if stock is None:
            raise NotFound("股票", stock_id)
        return stock

    async def _resolve_stock_id(self, user_id: Optional[str], ticker: str) -> Optional[str]:
        if not user_id or self._portfolio is None:
            return None
        try:
            stock = await self._portfolio.find_stock_by_ticker(user_id, ticker.upper())
        except Exception as exc:
            logger.warning(f"股票查询失败 {ticker}: {exc}")
            return None
        return stock["id"] if stock else None

    # ── 回写 ──────────────────────────────────────────────

    def _persist_in_background(self, stock_id: str, bars: List[Dict[str, Any]]) -> None:
        if self._prices is None or not bars:
            return
        task = asyncio.create_task(self._persist(stock_id, bars))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, stock_id: str, bars: List[Dict[str, Any]]) -> None:
        try:
            await self._prices.replace_range(stock_id, bars)
        except PersistenceFailure as exc:
            logger.error(str(exc))
        except Exception as exc:
            logger.error(str(PersistenceFailure(stock_id, exc)))

    async def wait_for_background(self) -> None:
        """等待所有后台回写结束（关闭服务时使用）"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── 日线 ──────────────────────────────────────────────

    async def _read_store(
        self,
        stock_id: str,
        start_date: Optional[str],
        end_date: Optional[str],
        limit: int,
    ) -> Optional[List[Dict[str, Any]]]:
        try:
            bars = await self._prices.get_range(stock_id, start_date, end_date, limit=limit)
        except Exception as exc:
            logger.warning(f"数据库读取失败，转向缓存 / 接口 stock_id={stock_id}: {exc}")
            return None
        if bars and self.is_data_sufficient(bars[-1]["date"], end_date):
            logger.debug(f"数据库命中（{len(bars)} 条） stock_id={stock_id}")
            return bars
        return None

    async def get_daily_prices(
        self,
        ticker: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        output_size: int = MAX_OUTPUT_SIZE,
        stock_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        获取日线价格（三级查询）

        Args:
            ticker: 股票代码
            start_date: 开始日期 YYYY-MM-DD，None 表示最长历史
            end_date: 结束日期 YYYY-MM-DD，None 表示最新
            output_size: 最多返回条数（≤ 5000）
            stock_id: 用户股票 ID，提供时优先查询数据库并回写新数据
        """
        ticker = ticker.upper()
        if stock_id and self._prices is not None:
            stored = await self._read_store(stock_id, start_date, end_date, output_size)
            if stored is not None:
                return stored

        async def _fetch() -> List[Dict[str, Any]]:
            bars = await self._client.time_series(ticker, start_date, end_date, output_size)
            if stock_id:
                self._persist_in_background(stock_id, bars)
            return bars

        return await self._cache.get_or_fetch(
            CacheKeys.prices(ticker, start_date, end_date, output_size),
            _fetch,
            self.prices_ttl(start_date),
            tag=ticker,
        )

    async def get_stock_prices(self, stock_id: str, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """获取用户股票区间日线；手动股票只读数据库"""
        stock = await self.get_stock(stock_id)

        async def _fetch() -> List[Dict[str, Any]]:
            if stock.get("is_manual"):
                if self._prices is None:
                    return []
                return await self._prices.get_range(stock_id, start_date, end_date)
            return await self.get_daily_prices(stock["ticker"], start_date, end_date, stock_id=stock_id)

        return await self._cache.get_or_fetch(
            CacheKeys.price_range(stock_id, start_date, end_date),
            _fetch,
            self.prices_ttl(start_date),
            tag=stock["ticker"],
        )

    async def get_price_for_date(
        self, ticker: str, target_date: str, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """指定日期的收盘价；非交易日取之前最近的交易日"""
        stock_id = await self._resolve_stock_id(user_id, ticker)
        target = date.fromisoformat(target_date)
        start = (target - timedelta(days=7)).isoformat()
        end = (target + timedelta(days=1)).isoformat()
        bars = await self.get_daily_prices(ticker, start, end, 10, stock_id=stock_id)
        valid = [bar for bar in bars if bar["date"] <= target_date]
        if not valid:
            return None
        closest = max(valid, key=lambda bar: bar["date"])
        return {"price": float(closest["close"]), "date": closest["date"]}

    # ── 单值查询 ──────────────────────────────────────────

    async def search_stocks(self, query: str) -> List[Dict[str, Any]]:
        return await self._cache.get_or_fetch(
            CacheKeys.search(query),
            lambda: self._client.symbol_search(query.strip()),
            CACHE_TTL["search"],
        )

    async def get_quote(self, ticker: str) -> Dict[str, Any]:
        ticker = ticker.upper()
        return await self._cache.get_or_fetch(
            CacheKeys.quote(ticker),
            lambda: self._client.quote(ticker),
            CACHE_TTL["quote"],
            tag=ticker,
        )

    async def get_eod_price(self, ticker: str, date_: str) -> float:
        ticker = ticker.upper()
        return await self._cache.get_or_fetch(
            CacheKeys.eod(ticker, date_),
            lambda: self._client.eod(ticker, date_),
            CACHE_TTL["eod"],
            tag=ticker,
        )

    async def get_latest_price(
        self, stock_id: str, stock: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """最新价格 {price, date}；手动股票取数据库最新收盘价"""
        if stock is None:
            stock = await self.get_stock(stock_id)
        if stock.get("is_manual"):
            return await self._cache.get_or_fetch(
                CacheKeys.manual_latest(stock_id),
                lambda: self._read_manual_latest(stock_id),
                CACHE_TTL["quote"],
            )
        quote = await self.get_quote(stock["ticker"])
        return {"price": float(quote["close"]), "date": quote["date"]}

    async def _read_manual_latest(self, stock_id: str) -> Dict[str, Any]:
        latest = await self._prices.get_latest(stock_id) if self._prices is not None else None
        if latest:
            return {"price": float(latest["close"]), "date": latest["date"]}
        return {"price": 0.0, "date": self._today().isoformat()}

    # ── 写入 ──────────────────────────────────────────────

    async def backfill_stock_history(self, stock_id: str, ticker: str) -> int:
        """新增股票时回填最长历史（约 20 年），已有数据则跳过，返回写入条数"""
        if self._prices is None:
            logger.warning("MongoDB 不可用，跳过历史回填")
            return 0
        if await self._prices.count(stock_id) > 0:
            return 0
        bars = await self.get_daily_prices(ticker)
        try:
            return await self._prices.replace_range(stock_id, bars)
        except PersistenceFailure as exc:
            logger.error(str(exc))
            return 0

    async def set_manual_price(self, user_id: str, stock_id: str, price: float, date_: str) -> None:
        """手动录入单日价格，并使相关缓存失效"""
        await self.get_stock(stock_id, user_id)
        if self._prices is None:
            raise PersistenceFailure(stock_id, RuntimeError("MongoDB 不可用"))
        await self._prices.upsert_bar(stock_id, {
            "date": date_,
            "open": price,
            "high": price,
            "low": price,
            "close": price,
            "adjusted_close": price,
            "volume": 0,
        })
        await self._cache.invalidate_pattern(CacheKeys.portfolio_prefix(user_id))
        await self._cache.invalidate_pattern(f"price-range:{stock_id}:")
        await self._cache.invalidate(CacheKeys.manual_latest(stock_id))


def get_price_service(request: Request) -> PriceService:
    """FastAPI 依赖：获取启动时创建的价格服务"""
    return request.app.state.price_service

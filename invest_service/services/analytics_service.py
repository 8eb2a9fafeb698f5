"""
投资分析服务
整合价格聚合 + 分析层，提供组合汇总、市值曲线、基准对比与卖出盈亏试算
"""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from fastapi import HTTPException, Request, status

from invest_service.config import settings
from invest_service.errors import InsufficientQuantity
from invest_service.layers.analysis import AnalysisLayer
from invest_service.layers.cache import CACHE_TTL, CacheKeys, InvestingCache
from invest_service.layers.persistence import MongoPortfolioStore
from invest_service.layers.processing import ProcessingLayer
from invest_service.services.price_service import PriceService

logger = logging.getLogger(__name__)


class AnalyticsService:
    """组合估值服务"""

    def __init__(
        self,
        prices: PriceService,
        cache: InvestingCache,
        store: MongoPortfolioStore,
        today: Callable[[], date] = date.today,
        stale_days: int = None,
        default_benchmark: str = None,
    ):
        self._prices = prices
        self._cache = cache
        self._store = store
        self._today = today
        self._stale_days = settings.PRICE_STALE_DAYS if stale_days is None else stale_days
        self._default_benchmark = default_benchmark or settings.DEFAULT_BENCHMARK
        self._analysis = AnalysisLayer()
        self._proc = ProcessingLayer()

    # ── 组合汇总 ──────────────────────────────────────────

    async def calculate_portfolio_summary(self, user_id: str) -> Dict[str, Any]:
        """当前市值、未实现 / 已实现盈亏、现金分布（缓存 15 分钟）"""

        async def _compute() -> Dict[str, Any]:
            holdings = await self._store.list_holdings(user_id)
            transactions = await self._store.list_transactions(user_id)
            cash_balances = await self._store.list_cash_balances(user_id)

            summaries = []
            for holding in holdings:
                stock = await self._store.get_stock(holding["stock_id"])
                latest = await self._prices.get_latest_price(holding["stock_id"], stock=stock)
                summaries.append(self._analysis.summarize_holding(
                    holding,
                    stock,
                    latest["price"],
                    latest["date"],
                    self._today(),
                    self._stale_days,
                ))
            return self._analysis.summarize_portfolio(summaries, transactions, cash_balances)

        return await self._cache.get_or_fetch(
            CacheKeys.portfolio_summary(user_id),
            _compute,
            CACHE_TTL["portfolio_summary"],
        )

    async def calculate_realized_pl(
        self,
        user_id: str,
        stock_id: str,
        quantity: float,
        price_per_share: float,
    ) -> Dict[str, float]:
        """
        试算一笔卖出的 FIFO 已实现盈亏

        先回放历史卖出消耗的批次；卖出数量超过剩余批次时抛出 InsufficientQuantity。
        """
        transactions = await self._store.list_transactions(user_id, stock_id)
        lots = self._analysis.open_lots(transactions)
        available = sum(lot[0] for lot in lots)
        if quantity > available + 1e-9:
            raise InsufficientQuantity(stock_id, quantity, available)

        cost_basis, _ = self._analysis.match_fifo_lots(lots, quantity)
        proceeds = quantity * price_per_share
        return {
            "quantity": quantity,
            "price_per_share": price_per_share,
            "proceeds": proceeds,
            "cost_basis": cost_basis,
            "realized_pl": proceeds - cost_basis,
        }

    # ── 市值曲线 ──────────────────────────────────────────

    async def get_portfolio_chart(self, user_id: str, range_: str) -> List[Dict[str, Any]]:
        """组合每日市值（缓存 1 小时）"""

        async def _compute() -> List[Dict[str, Any]]:
            holdings = await self._store.list_holdings(user_id)
            if not holdings:
                return []
            start, end = self._prices.get_date_range(range_)

            quantities: Dict[str, float] = {}
            for holding in holdings:
                stock_id = holding["stock_id"]
                quantities[stock_id] = quantities.get(stock_id, 0.0) + float(holding["quantity"])

            stock_ids = list(quantities)
            price_lists = await asyncio.gather(
                *(self._prices.get_stock_prices(stock_id, start, end) for stock_id in stock_ids)
            )
            closes = {
                stock_id: self._proc.close_by_date(bars)
                for stock_id, bars in zip(stock_ids, price_lists)
            }
            return self._analysis.build_value_series(closes, quantities)

        return await self._cache.get_or_fetch(
            CacheKeys.portfolio_chart(user_id, range_),
            _compute,
            CACHE_TTL["portfolio_chart"],
        )

    # ── 基准对比 ──────────────────────────────────────────

    async def get_benchmark_comparison(
        self,
        user_id: str,
        range_: str,
        benchmark_ticker: Optional[str] = None,
    ) -> Dict[str, Any]:
        """组合与基准（默认 SPY）的归一化收益对比（缓存 1 小时）"""
        ticker = (benchmark_ticker or self._default_benchmark).upper()

        async def _compute() -> Dict[str, Any]:
            chart = await self.get_portfolio_chart(user_id, range_)
            if not chart:
                return self._analysis.empty_comparison()
            start, end = self._prices.get_date_range(range_)
            bars = await self._prices.get_daily_prices(ticker, start, end)
            return self._analysis.compare_to_benchmark(chart, self._proc.close_by_date(bars))

        return await self._cache.get_or_fetch(
            CacheKeys.portfolio_benchmark(user_id, ticker, range_),
            _compute,
            CACHE_TTL["portfolio_benchmark"],
            tag=ticker,
        )

    async def invalidate_portfolio_cache(self, user_id: str) -> int:
        """持仓或交易变化后清除该用户所有组合缓存"""
        return await self._cache.invalidate_pattern(CacheKeys.portfolio_prefix(user_id))


def get_analytics_service(request: Request) -> AnalyticsService:
    """FastAPI 依赖：组合分析需要 MongoDB，不可用时返回 503"""
    service = request.app.state.analytics_service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="MongoDB 不可用，组合数据暂不可访问",
        )
    return service

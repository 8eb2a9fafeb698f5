"""
Layer 1 – 数据获取层
封装 Twelve Data 行情接口（代码搜索 / 日线 / 报价 / 单日收盘价），
所有请求经过同一个限流器，保证两次请求间隔不小于配置值（默认 7.5 秒，即 8 次/分钟）。
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from invest_service.config import settings
from invest_service.errors import UpstreamUnavailable
from invest_service.layers.processing import ProcessingLayer

logger = logging.getLogger(__name__)

MAX_OUTPUT_SIZE = 5000


class RateLimiter:
    """
    固定间隔限流器

    等待与记录时间戳在同一把锁内完成，并发调用者依次通过，
    任意两次放行之间至少间隔 min_interval 秒。
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                wait = self._min_interval - (self._clock() - self._last_call)
                if wait > 0:
                    logger.debug(f"限流等待 {wait:.2f}s")
                    await self._sleep(wait)
            self._last_call = self._clock()


class TwelveDataClient:
    """Twelve Data HTTP 客户端（无缓存，缓存由上层负责）"""

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        limiter: Optional[RateLimiter] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = settings.TWELVE_DATA_API_KEY if api_key is None else api_key
        self._base_url = (base_url or settings.TWELVE_DATA_BASE_URL).rstrip("/")
        self._limiter = limiter or RateLimiter(settings.TWELVE_DATA_MIN_INTERVAL)
        self._http = http or httpx.AsyncClient()
        self._proc = ProcessingLayer()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── 请求封装 ──────────────────────────────────────────

    async def _request(self, endpoint: str, params: Dict[str, Any]) -> Any:
        if not self._api_key:
            raise UpstreamUnavailable(endpoint, "TWELVE_DATA_API_KEY 未配置")

        await self._limiter.acquire()
        logger.info(f"Twelve Data 请求: /{endpoint} {params}")
        try:
            response = await self._http.get(
                f"{self._base_url}/{endpoint}",
                params={**params, "apikey": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(endpoint, str(exc)) from exc

        if not response.is_success:
            raise UpstreamUnavailable(endpoint, response.reason_phrase, status=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(endpoint, "响应不是合法 JSON") from exc

        if isinstance(data, dict) and data.get("status") == "error":
            raise UpstreamUnavailable(
                endpoint, data.get("message", "接口返回错误状态"), status=data.get("code")
            )
        return data

    @staticmethod
    def _require_ok(endpoint: str, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict) or data.get("status") != "ok":
            raise UpstreamUnavailable(endpoint, "接口返回错误状态")
        return data

    # ── 接口 ──────────────────────────────────────────────

    async def symbol_search(self, query: str) -> List[Dict[str, Any]]:
        """按代码或名称搜索股票"""
        data = self._require_ok("symbol_search", await self._request("symbol_search", {"symbol": query}))
        return [
            {
                "ticker": item.get("symbol", ""),
                "name": item.get("instrument_name", ""),
                "exchange": item.get("exchange", ""),
                "currency": item.get("currency", ""),
            }
            for item in data.get("data", [])
        ]

    async def time_series(
        self,
        ticker: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        output_size: int = MAX_OUTPUT_SIZE,
    ) -> List[Dict[str, Any]]:
        """
        获取日线 OHLCV，按日期升序返回

        Twelve Data 基础接口不提供复权收盘价，adjusted_close 与 close 相同。
        """
        params: Dict[str, Any] = {
            "symbol": ticker,
            "interval": "1day",
            "outputsize": min(output_size, MAX_OUTPUT_SIZE),
        }
        if start_date:
            params["start_date"] = start_date
        if end_date:
            params["end_date"] = end_date

        data = self._require_ok("time_series", await self._request("time_series", params))
        return self._proc.parse_bars(data.get("values", []))

    async def quote(self, ticker: str) -> Dict[str, Any]:
        """获取最新报价（EOD），返回单个 PriceBar"""
        data = await self._request("quote", {"symbol": ticker})
        bars = self._proc.parse_bars([data])
        if not bars:
            raise UpstreamUnavailable("quote", f"{ticker} 无报价数据")
        return bars[0]

    async def eod(self, ticker: str, date: str) -> float:
        """获取指定日期的收盘价"""
        data = await self._request("eod", {"symbol": ticker, "date": date})
        close = data.get("close") if isinstance(data, dict) else None
        if not close:
            raise UpstreamUnavailable("eod", f"{ticker} 在 {date} 无价格数据")
        return float(close)

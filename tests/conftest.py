"""
测试公共夹具
提供内存版 Redis、内存版价格 / 组合存储、假行情客户端与可控时钟，
使各层测试不依赖真实数据库与网络
"""

import os
import re
import sys
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from invest_service.errors import UpstreamUnavailable  # noqa: E402


# ─────────────────────────────────────────────────────────
# 辅助函数：生成日线记录
# ─────────────────────────────────────────────────────────

def make_bars(start: str, closes: List[float]) -> List[Dict[str, Any]]:
    """从 start 开始按自然日生成日线"""
    first = date.fromisoformat(start)
    return [
        {
            "date": (first + timedelta(days=i)).isoformat(),
            "open": close,
            "high": close,
            "low": close,
            "close": close,
            "adjusted_close": close,
            "volume": 1000,
        }
        for i, close in enumerate(closes)
    ]


class FakeClock:
    """可手动推进的时钟（秒）"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ─────────────────────────────────────────────────────────
# 内存版 Redis（只实现缓存层用到的命令，decode_responses=True 语义）
# ─────────────────────────────────────────────────────────

def _glob_to_regex(pattern: str) -> "re.Pattern":
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(out) + "$")


class FakeRedis:
    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.sets: Dict[str, set] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.strings[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.zsets, self.hashes, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def zadd(self, name: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self.zsets.get(name, {}).get(member)

    async def zcard(self, name: str) -> int:
        return len(self.zsets.get(name, {}))

    async def zrange(self, name: str, start: int, end: int) -> List[str]:
        ordered = sorted(self.zsets.get(name, {}).items(), key=lambda kv: (kv[1], kv[0]))
        members = [member for member, _ in ordered]
        if end < 0:
            end = len(members) + end
        return members[start:end + 1]

    async def zrem(self, name: str, *members: str) -> int:
        zset = self.zsets.get(name, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(name, {})
        bucket[key] = str(int(bucket.get(key, 0)) + amount)
        return int(bucket[key])

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self.hashes.get(name, {}))

    async def sadd(self, name: str, *values: str) -> int:
        bucket = self.sets.setdefault(name, set())
        added = len(set(values) - bucket)
        bucket.update(values)
        return added

    async def smembers(self, name: str) -> set:
        return set(self.sets.get(name, set()))

    async def scan_iter(self, match: str = "*"):
        regex = _glob_to_regex(match)
        keys = set(self.strings) | set(self.zsets) | set(self.hashes) | set(self.sets)
        for key in sorted(keys):
            if regex.match(key):
                yield key


# ─────────────────────────────────────────────────────────
# 内存版存储
# ─────────────────────────────────────────────────────────

class FakePriceStore:
    def __init__(self, bars_by_stock: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.bars: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for stock_id, bars in (bars_by_stock or {}).items():
            self.bars[stock_id] = {bar["date"]: dict(bar) for bar in bars}
        self.replace_calls: List[tuple] = []
        self.fail_reads = False

    async def get_range(self, stock_id, start_date=None, end_date=None, limit=None):
        if self.fail_reads:
            raise RuntimeError("mongo down")
        rows = [
            bar for d, bar in sorted(self.bars.get(stock_id, {}).items())
            if (not start_date or d >= start_date) and (not end_date or d <= end_date)
        ]
        if limit:
            rows = rows[-limit:]
        return [dict(bar) for bar in rows]

    async def get_latest(self, stock_id):
        rows = await self.get_range(stock_id)
        return rows[-1] if rows else None

    async def count(self, stock_id):
        return len(self.bars.get(stock_id, {}))

    async def replace_range(self, stock_id, bars):
        self.replace_calls.append((stock_id, [bar["date"] for bar in bars]))
        if not bars:
            return 0
        dates = [bar["date"] for bar in bars]
        stored = self.bars.setdefault(stock_id, {})
        for d in [d for d in stored if min(dates) <= d <= max(dates)]:
            del stored[d]
        for bar in bars:
            stored[bar["date"]] = dict(bar)
        return len(bars)

    async def upsert_bar(self, stock_id, bar):
        self.bars.setdefault(stock_id, {})[bar["date"]] = dict(bar)


class FakePortfolioStore:
    def __init__(self, stocks=None, holdings=None, transactions=None, cash_balances=None):
        self.stocks: List[Dict[str, Any]] = list(stocks or [])
        self.holdings: List[Dict[str, Any]] = list(holdings or [])
        self.transactions: List[Dict[str, Any]] = list(transactions or [])
        self.cash_balances: List[Dict[str, Any]] = list(cash_balances or [])

    async def get_stock(self, stock_id, user_id=None):
        for stock in self.stocks:
            if stock["id"] == stock_id and (user_id is None or stock["user_id"] == user_id):
                return dict(stock)
        return None

    async def find_stock_by_ticker(self, user_id, ticker):
        for stock in self.stocks:
            if stock["user_id"] == user_id and stock["ticker"] == ticker:
                return dict(stock)
        return None

    async def list_holdings(self, user_id):
        return [dict(h) for h in self.holdings if h["user_id"] == user_id]

    async def list_transactions(self, user_id, stock_id=None):
        rows = [
            dict(tx) for tx in self.transactions
            if tx["user_id"] == user_id and (stock_id is None or tx["stock_id"] == stock_id)
        ]
        return sorted(rows, key=lambda tx: tx["date"])

    async def list_cash_balances(self, user_id):
        return [dict(c) for c in self.cash_balances if c["user_id"] == user_id]


# ─────────────────────────────────────────────────────────
# 假行情客户端
# ─────────────────────────────────────────────────────────

class FakeTwelveData:
    def __init__(self, series: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.series = series or {}
        self.calls: List[tuple] = []
        self.fail = False

    def _check(self, endpoint):
        if self.fail:
            raise UpstreamUnavailable(endpoint, "provider down", status=503)

    async def symbol_search(self, query):
        self.calls.append(("symbol_search", query))
        self._check("symbol_search")
        return [{"ticker": query.upper(), "name": f"{query.upper()} Inc", "exchange": "NASDAQ", "currency": "USD"}]

    async def time_series(self, ticker, start_date=None, end_date=None, output_size=5000):
        self.calls.append(("time_series", ticker, start_date, end_date, output_size))
        self._check("time_series")
        bars = [
            dict(bar) for bar in self.series.get(ticker, [])
            if (not start_date or bar["date"] >= start_date) and (not end_date or bar["date"] <= end_date)
        ]
        return bars[-output_size:]

    async def quote(self, ticker):
        self.calls.append(("quote", ticker))
        self._check("quote")
        bars = self.series.get(ticker)
        if not bars:
            raise UpstreamUnavailable("quote", f"{ticker} 无报价数据")
        return dict(bars[-1])

    async def eod(self, ticker, date_):
        self.calls.append(("eod", ticker, date_))
        self._check("eod")
        for bar in self.series.get(ticker, []):
            if bar["date"] == date_:
                return float(bar["close"])
        raise UpstreamUnavailable("eod", f"{ticker} 在 {date_} 无价格数据")

    def count(self, endpoint: str) -> int:
        return sum(1 for call in self.calls if call[0] == endpoint)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()

"""
Layer 4 – 分析层
持仓估值计算：FIFO 已实现盈亏、持仓 / 组合汇总、前向填充的组合市值曲线、基准对比
"""

import logging
from collections import deque
from datetime import date
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

_EPSILON = 1e-9

Lot = List[float]  # [剩余数量, 买入单价]


def _pct(numerator: float, denominator: float) -> float:
    return numerator / denominator * 100 if denominator > 0 else 0.0


def _chronological(transactions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # 同一天先买后卖
    return sorted(transactions, key=lambda tx: (str(tx["date"]), tx.get("type") != "buy"))


class AnalysisLayer:
    """分析层：在持仓、交易与价格序列上计算估值指标"""

    # ── FIFO 批次匹配 ─────────────────────────────────────

    def match_fifo_lots(self, lots: Deque[Lot], sell_quantity: float) -> Tuple[float, float]:
        """
        从最早批次开始消耗卖出数量（原地修改 lots）

        Returns:
            (消耗的成本, 批次不足的数量)
        """
        remaining = sell_quantity
        cost_basis = 0.0
        while remaining > _EPSILON and lots:
            lot = lots[0]
            taken = min(remaining, lot[0])
            cost_basis += taken * lot[1]
            remaining -= taken
            lot[0] -= taken
            if lot[0] <= _EPSILON:
                lots.popleft()
        return cost_basis, max(remaining, 0.0)

    def realized_pl(
        self,
        buys: Iterable[Dict[str, Any]],
        sell_quantity: float,
        sell_price: float,
    ) -> Dict[str, float]:
        """
        单笔卖出的已实现盈亏（买入按日期升序，先进先出）

        买入数量不足时，不足部分按零成本计算，shortfall 返回不足的数量。
        """
        lots: Deque[Lot] = deque(
            [float(tx["quantity"]), float(tx["price_per_share"])]
            for tx in sorted(buys, key=lambda tx: str(tx["date"]))
        )
        cost_basis, shortfall = self.match_fifo_lots(lots, sell_quantity)
        proceeds = sell_quantity * sell_price
        return {
            "proceeds": proceeds,
            "cost_basis": cost_basis,
            "realized_pl": proceeds - cost_basis,
            "shortfall": shortfall,
        }

    def open_lots(self, transactions: Iterable[Dict[str, Any]]) -> Deque[Lot]:
        """回放单只股票的交易历史，返回尚未卖出的批次"""
        lots: Deque[Lot] = deque()
        for tx in _chronological(transactions):
            if tx.get("type") == "buy":
                lots.append([float(tx["quantity"]), float(tx["price_per_share"])])
            elif tx.get("type") == "sell":
                self.match_fifo_lots(lots, float(tx["quantity"]))
        return lots

    def replay_realized_pl(self, transactions: Iterable[Dict[str, Any]]) -> float:
        """按时间顺序回放全部交易，累计 FIFO 已实现盈亏"""
        lots_by_stock: Dict[str, Deque[Lot]] = {}
        realized = 0.0
        for tx in _chronological(transactions):
            lots = lots_by_stock.setdefault(tx["stock_id"], deque())
            quantity = float(tx["quantity"])
            price = float(tx["price_per_share"])
            if tx.get("type") == "buy":
                lots.append([quantity, price])
            elif tx.get("type") == "sell":
                cost_basis, shortfall = self.match_fifo_lots(lots, quantity)
                if shortfall > _EPSILON:
                    logger.warning(
                        f"卖出数量超过买入批次 stock_id={tx['stock_id']} 不足 {shortfall}，按零成本计算"
                    )
                realized += quantity * price - cost_basis
        return realized

    # ── 持仓汇总 ──────────────────────────────────────────

    def summarize_holding(
        self,
        holding: Dict[str, Any],
        stock: Optional[Dict[str, Any]],
        price: float,
        price_date: str,
        today: date,
        stale_days: int,
    ) -> Dict[str, Any]:
        stock = stock or {}
        quantity = float(holding["quantity"])
        average_cost_basis = float(holding["average_cost_basis"])
        current_value = quantity * price
        cost_basis = quantity * average_cost_basis
        unrealized_pl = current_value - cost_basis
        age_days = abs((today - date.fromisoformat(price_date)).days)
        return {
            "stock_id": holding["stock_id"],
            "ticker": stock.get("ticker", ""),
            "name": stock.get("name", ""),
            "quantity": quantity,
            "average_cost_basis": average_cost_basis,
            "current_price": price,
            "current_value": current_value,
            "cost_basis": cost_basis,
            "unrealized_pl": unrealized_pl,
            "unrealized_pl_percent": _pct(unrealized_pl, cost_basis),
            "currency": stock.get("currency", holding.get("currency", "")),
            "is_manual": bool(stock.get("is_manual", False)),
            "last_updated": price_date,
            "is_stale": age_days > stale_days,
        }

    def summarize_portfolio(
        self,
        holdings: List[Dict[str, Any]],
        transactions: List[Dict[str, Any]],
        cash_balances: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """在持仓汇总基础上计算组合总计"""
        total_invested = sum(
            float(tx.get("total_amount", 0)) for tx in transactions if tx.get("type") == "buy"
        )
        realized_pl = self.replay_realized_pl(transactions)
        current_value = sum(h["current_value"] for h in holdings)
        cost_basis = sum(h["cost_basis"] for h in holdings)
        unrealized_pl = sum(h["unrealized_pl"] for h in holdings)
        total_return = unrealized_pl + realized_pl

        available: Dict[str, float] = {}
        settled: Dict[str, float] = {}
        for cash in cash_balances:
            available[cash["currency"]] = float(cash.get("available_balance", 0))
            settled[cash["currency"]] = float(cash.get("settled_balance", 0))
        total_cash = sum(available.values())
        total_portfolio_value = current_value + total_cash

        return {
            "total_invested": total_invested,
            "current_value": current_value,
            "unrealized_pl": unrealized_pl,
            "unrealized_pl_percent": _pct(unrealized_pl, cost_basis),
            "realized_pl": realized_pl,
            "total_return": total_return,
            "total_return_percent": _pct(total_return, total_invested),
            "holdings": holdings,
            "cash": {
                "available_balance": available,
                "settled_balance": settled,
                "total_cash": total_cash,
            },
            "total_portfolio_value": total_portfolio_value,
            "stock_value": current_value,
            "cash_allocation_percent": _pct(total_cash, total_portfolio_value),
        }

    # ── 组合市值曲线 ──────────────────────────────────────

    def build_value_series(
        self,
        closes_by_stock: Dict[str, Dict[str, float]],
        quantities: Dict[str, float],
    ) -> List[Dict[str, Any]]:
        """
        按所有持仓交易日的并集生成组合市值序列

        某只股票当日无价格时沿用其最近一次价格（前向填充），
        在首个价格出现之前按 0 计。
        """
        closes = {sid: prices for sid, prices in closes_by_stock.items() if prices}
        if not closes:
            return []
        df = pd.DataFrame(closes).sort_index()
        df = df.ffill().fillna(0.0)
        weights = pd.Series(quantities, dtype=float).reindex(df.columns).fillna(0.0)
        values = (df * weights).sum(axis=1)
        return [{"date": str(d), "value": float(v)} for d, v in values.items()]

    # ── 基准对比 ──────────────────────────────────────────

    @staticmethod
    def empty_comparison() -> Dict[str, Any]:
        def _side() -> Dict[str, Any]:
            return {"start_value": 0.0, "end_value": 0.0, "return": 0.0, "return_percent": 0.0, "chart_data": []}

        return {"portfolio": _side(), "benchmark": _side()}

    def compare_to_benchmark(
        self,
        chart: List[Dict[str, Any]],
        benchmark_closes: Dict[str, float],
    ) -> Dict[str, Any]:
        """
        仅保留两条序列共有的日期，以首个共同日期为基准归一化为百分比收益

        normalized(t) = (value(t) - value(t0)) / value(t0) * 100
        """
        if not chart or not benchmark_closes:
            return self.empty_comparison()

        portfolio = pd.Series({p["date"]: float(p["value"]) for p in chart}, dtype=float)
        benchmark = pd.Series(benchmark_closes, dtype=float)
        shared = portfolio.index.intersection(benchmark.index).sort_values()
        if len(shared) == 0:
            return self.empty_comparison()

        portfolio = portfolio.loc[shared]
        benchmark = benchmark.loc[shared]
        if portfolio.iloc[0] <= 0 or benchmark.iloc[0] <= 0:
            return self.empty_comparison()

        return {
            "portfolio": self._normalize(portfolio),
            "benchmark": self._normalize(benchmark),
        }

    @staticmethod
    def _normalize(series: pd.Series) -> Dict[str, Any]:
        start_value = float(series.iloc[0])
        end_value = float(series.iloc[-1])
        normalized = (series - start_value) / start_value * 100
        return {
            "start_value": start_value,
            "end_value": end_value,
            "return": end_value - start_value,
            "return_percent": (end_value - start_value) / start_value * 100,
            "chart_data": [{"date": str(d), "value": float(v)} for d, v in normalized.items()],
        }

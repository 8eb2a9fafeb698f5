"""
持久层
MongoDB 上的永久价格存储（stock_prices）与用户投资记录
（stocks / portfolio_holdings / investment_transactions / investment_cash_balances）

价格存储对每个 (stock_id, date) 至多保存一条日线（唯一索引保证）：
重叠区间重新拉取时按日期 upsert，再删除区间内已不存在的旧日期。
"""

import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import UpdateOne
from pymongo.errors import PyMongoError

from invest_service.errors import PersistenceFailure

logger = logging.getLogger(__name__)

_NO_ID = {"_id": 0}
_BAR_PROJECTION = {"_id": 0, "stock_id": 0}


class MongoPriceStore:
    """日线价格永久存储"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self._col = db["stock_prices"]

    async def get_range(
        self,
        stock_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        查询区间内的日线，按日期升序返回

        指定 limit 时保留最新的 limit 条。
        """
        query: Dict[str, Any] = {"stock_id": stock_id}
        date_filter: Dict[str, str] = {}
        if start_date:
            date_filter["$gte"] = start_date
        if end_date:
            date_filter["$lte"] = end_date
        if date_filter:
            query["date"] = date_filter

        cursor = self._col.find(query, _BAR_PROJECTION).sort("date", -1)
        if limit:
            cursor = cursor.limit(limit)
        rows = await cursor.to_list(length=None)
        rows.reverse()
        return rows

    async def get_latest(self, stock_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one(
            {"stock_id": stock_id}, _BAR_PROJECTION, sort=[("date", -1)]
        )

    async def count(self, stock_id: str) -> int:
        return await self._col.count_documents({"stock_id": stock_id})

    async def replace_range(self, stock_id: str, bars: List[Dict[str, Any]]) -> int:
        """
        按 (stock_id, date) 幂等写入区间日线，并删除区间内新数据中不存在的旧日期，
        返回写入条数

        写入使用 upsert，并发回写同一区间不会产生重复行。
        """
        if not bars:
            return 0
        dates = sorted({bar["date"] for bar in bars})
        ops = [
            UpdateOne(
                {"stock_id": stock_id, "date": bar["date"]},
                {"$set": {**bar, "stock_id": stock_id}},
                upsert=True,
            )
            for bar in bars
        ]
        try:
            await self._col.bulk_write(ops, ordered=False)
            await self._col.delete_many({
                "stock_id": stock_id,
                "date": {"$gte": dates[0], "$lte": dates[-1], "$nin": dates},
            })
        except PyMongoError as exc:
            raise PersistenceFailure(stock_id, exc) from exc
        logger.info(f"已保存 {len(bars)} 条价格 stock_id={stock_id}")
        return len(bars)

    async def upsert_bar(self, stock_id: str, bar: Dict[str, Any]) -> None:
        """写入或覆盖单日价格（手动录入）"""
        try:
            await self._col.update_one(
                {"stock_id": stock_id, "date": bar["date"]},
                {"$set": {**bar, "stock_id": stock_id}},
                upsert=True,
            )
        except PyMongoError as exc:
            raise PersistenceFailure(stock_id, exc) from exc


class MongoPortfolioStore:
    """用户股票、持仓、交易与现金余额（只读）"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self._db = db

    async def get_stock(self, stock_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {"id": stock_id}
        if user_id is not None:
            query["user_id"] = user_id
        return await self._db["stocks"].find_one(query, _NO_ID)

    async def find_stock_by_ticker(self, user_id: str, ticker: str) -> Optional[Dict[str, Any]]:
        return await self._db["stocks"].find_one({"user_id": user_id, "ticker": ticker}, _NO_ID)

    async def list_holdings(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self._db["portfolio_holdings"].find({"user_id": user_id}, _NO_ID)
        return await cursor.to_list(length=None)

    async def list_transactions(
        self, user_id: str, stock_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """按日期升序返回交易记录"""
        query: Dict[str, Any] = {"user_id": user_id}
        if stock_id is not None:
            query["stock_id"] = stock_id
        cursor = self._db["investment_transactions"].find(query, _NO_ID).sort("date", 1)
        return await cursor.to_list(length=None)

    async def list_cash_balances(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self._db["investment_cash_balances"].find({"user_id": user_id}, _NO_ID)
        return await cursor.to_list(length=None)

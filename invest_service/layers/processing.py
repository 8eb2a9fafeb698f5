"""
Layer 3 – 数据处理层
对行情接口和数据库返回的原始记录进行清洗、格式化、标准化，
生成统一的日线 PriceBar 记录：date, open, high, low, close, adjusted_close, volume
"""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

BAR_COLUMNS = ["date", "open", "high", "low", "close", "adjusted_close", "volume"]
_PRICE_COLUMNS = ["open", "high", "low", "close", "adjusted_close"]


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化"""

    def normalize_bars(self, records: List[Dict[str, Any]]) -> pd.DataFrame:
        """
        将原始日线记录列表标准化为按日期升序的 DataFrame

        - 日期统一为 YYYY-MM-DD（丢弃时间部分和无法解析的行）
        - 缺失的 adjusted_close 使用 close 补齐
        - 同一日期重复出现时保留最后一条
        """
        if not records:
            return pd.DataFrame(columns=BAR_COLUMNS)

        df = pd.DataFrame(records)
        if "datetime" in df.columns and "date" not in df.columns:
            df = df.rename(columns={"datetime": "date"})

        for col in ["open", "high", "low", "close"]:
            if col not in df.columns:
                df[col] = 0.0
        if "adjusted_close" not in df.columns:
            df["adjusted_close"] = df["close"]
        if "volume" not in df.columns:
            df["volume"] = 0

        for col in _PRICE_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0).astype(float)
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce").fillna(0).astype("int64")

        # 日期格式统一
        df["date"] = pd.to_datetime(df["date"].astype(str).str[:10], errors="coerce")
        df = df.dropna(subset=["date"])
        df["date"] = df["date"].dt.strftime("%Y-%m-%d")

        df = df.drop_duplicates(subset=["date"], keep="last")
        df = df.sort_values("date").reset_index(drop=True)
        return df[BAR_COLUMNS]

    def filter_date_range(
        self,
        df: pd.DataFrame,
        start_date: Optional[str],
        end_date: Optional[str],
    ) -> pd.DataFrame:
        """按日期范围过滤数据（闭区间）"""
        if df.empty:
            return df
        if start_date:
            df = df[df["date"] >= start_date]
        if end_date:
            df = df[df["date"] <= end_date]
        return df.reset_index(drop=True)

    def to_bars(self, df: pd.DataFrame) -> List[Dict[str, Any]]:
        """DataFrame 转换为 PriceBar 字典列表"""
        if df.empty:
            return []
        return df[BAR_COLUMNS].to_dict(orient="records")

    def parse_bars(
        self,
        records: List[Dict[str, Any]],
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """标准化 + 过滤 + 输出，一步完成"""
        df = self.normalize_bars(records)
        df = self.filter_date_range(df, start_date, end_date)
        return self.to_bars(df)

    def close_by_date(self, bars: List[Dict[str, Any]]) -> Dict[str, float]:
        """提取 {date: close} 映射"""
        return {bar["date"]: float(bar["close"]) for bar in bars}

"""投资接口请求模型"""

import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ManualPriceRequest(BaseModel):
    """手动录入单日价格"""
    price: float = Field(..., gt=0)
    date: datetime.date = Field(..., description="YYYY-MM-DD")


class RealizedPLRequest(BaseModel):
    """卖出盈亏试算"""
    stock_id: str
    quantity: float = Field(..., gt=0)
    price_per_share: float = Field(..., ge=0)


class InvalidateRequest(BaseModel):
    """按键或前缀删除缓存，二者必须且只能提供一个"""
    key: Optional[str] = None
    prefix: Optional[str] = None

    @model_validator(mode="after")
    def check_exactly_one(self) -> "InvalidateRequest":
        if bool(self.key) == bool(self.prefix):
            raise ValueError("key 与 prefix 必须且只能提供一个")
        return self

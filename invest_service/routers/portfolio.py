"""
投资组合路由
GET  /api/portfolio/summary      - 组合汇总
GET  /api/portfolio/chart        - 组合每日市值
GET  /api/portfolio/benchmark    - 与基准的收益对比
POST /api/portfolio/realized-pl  - 卖出盈亏试算（FIFO）
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from invest_service.models.investing import RealizedPLRequest
from invest_service.models.response import ApiResponse
from invest_service.routers.auth import get_current_user
from invest_service.routers.stocks import RANGE_PATTERN
from invest_service.services.analytics_service import AnalyticsService, get_analytics_service

router = APIRouter(prefix="/api/portfolio", tags=["投资组合"])


@router.get("/summary", response_model=ApiResponse)
async def portfolio_summary(
    user_id: str = Depends(get_current_user),
    svc: AnalyticsService = Depends(get_analytics_service),
):
    return ApiResponse.ok(data=await svc.calculate_portfolio_summary(user_id))


@router.get("/chart", response_model=ApiResponse)
async def portfolio_chart(
    range_: str = Query(default="1Y", alias="range", pattern=RANGE_PATTERN),
    user_id: str = Depends(get_current_user),
    svc: AnalyticsService = Depends(get_analytics_service),
):
    """组合每日市值（缺失价格前向填充）"""
    points = await svc.get_portfolio_chart(user_id, range_)
    return ApiResponse.ok(data={"range": range_, "points": points})


@router.get("/benchmark", response_model=ApiResponse)
async def portfolio_benchmark(
    range_: str = Query(default="1Y", alias="range", pattern=RANGE_PATTERN),
    ticker: Optional[str] = Query(default=None, description="基准代码，默认 SPY"),
    user_id: str = Depends(get_current_user),
    svc: AnalyticsService = Depends(get_analytics_service),
):
    """组合与基准的归一化收益对比"""
    return ApiResponse.ok(data=await svc.get_benchmark_comparison(user_id, range_, ticker))


@router.post("/realized-pl", response_model=ApiResponse)
async def preview_realized_pl(
    body: RealizedPLRequest,
    user_id: str = Depends(get_current_user),
    svc: AnalyticsService = Depends(get_analytics_service),
):
    result = await svc.calculate_realized_pl(
        user_id, body.stock_id, body.quantity, body.price_per_share
    )
    return ApiResponse.ok(data=result)

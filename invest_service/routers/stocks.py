"""
股票数据路由
GET  /api/stocks/search                 - 搜索股票
GET  /api/stocks/quote/{ticker}         - 最新报价
GET  /api/stocks/{ticker}/price-on      - 指定日期收盘价
GET  /api/stocks/{stock_id}/history     - 用户股票区间日线
POST /api/stocks/{stock_id}/backfill    - 回填最长历史
PUT  /api/stocks/{stock_id}/manual-price - 手动录入价格
"""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status

from invest_service.models.investing import ManualPriceRequest
from invest_service.models.response import ApiResponse
from invest_service.routers.auth import get_current_user
from invest_service.services.price_service import PriceService, get_price_service

router = APIRouter(prefix="/api/stocks", tags=["股票数据"])

RANGE_PATTERN = r"^(1D|1W|1M|3M|1Y|5Y|MAX)$"


@router.get("/search", response_model=ApiResponse)
async def search_stocks(
    query: str = Query(..., min_length=1, description="股票代码或名称"),
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """根据关键词搜索股票"""
    results = await svc.search_stocks(query)
    return ApiResponse.ok(data={"query": query, "count": len(results), "stocks": results})


@router.get("/quote/{ticker}", response_model=ApiResponse)
async def get_quote(
    ticker: str,
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """获取最新（EOD）报价"""
    return ApiResponse.ok(data=await svc.get_quote(ticker))


@router.get("/{ticker}/price-on", response_model=ApiResponse)
async def get_price_on(
    ticker: str,
    date_: date = Query(..., alias="date", description="YYYY-MM-DD"),
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """获取指定日期收盘价；非交易日返回之前最近的交易日"""
    result = await svc.get_price_for_date(ticker, date_.isoformat(), user_id=user_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{ticker.upper()} 在 {date_} 前后无价格数据",
        )
    return ApiResponse.ok(data={"ticker": ticker.upper(), **result})


@router.get("/{stock_id}/history", response_model=ApiResponse)
async def get_stock_history(
    stock_id: str,
    range_: str = Query(default="1Y", alias="range", pattern=RANGE_PATTERN),
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """获取用户股票在区间内的日线"""
    await svc.get_stock(stock_id, user_id)
    start, end = svc.get_date_range(range_)
    bars = await svc.get_stock_prices(stock_id, start, end)
    return ApiResponse.ok(
        data={"stock_id": stock_id, "range": range_, "count": len(bars), "prices": bars},
    )


@router.post("/{stock_id}/backfill", response_model=ApiResponse)
async def backfill_history(
    stock_id: str,
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """新增股票后回填历史价格（已有数据时跳过）"""
    stock = await svc.get_stock(stock_id, user_id)
    if stock.get("is_manual"):
        return ApiResponse.ok(data={"inserted": 0}, message="手动股票无需回填")
    inserted = await svc.backfill_stock_history(stock_id, stock["ticker"])
    return ApiResponse.ok(data={"inserted": inserted}, message=f"已回填 {inserted} 条价格")


@router.put("/{stock_id}/manual-price", response_model=ApiResponse)
async def set_manual_price(
    stock_id: str,
    body: ManualPriceRequest,
    user_id: str = Depends(get_current_user),
    svc: PriceService = Depends(get_price_service),
):
    """手动录入单日价格"""
    await svc.set_manual_price(user_id, stock_id, body.price, body.date.isoformat())
    return ApiResponse.ok(message=f"已更新 {body.date} 价格")

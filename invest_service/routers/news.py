"""
财经新闻路由
GET /api/news/ticker/{ticker}  - 个股新闻
GET /api/news/{category}       - 分类新闻（latest / ai / oil / medical）
"""

from fastapi import APIRouter, Depends, HTTPException, status

from invest_service.models.response import ApiResponse
from invest_service.routers.auth import get_current_user
from invest_service.services.news_service import FEEDS, NewsService, get_news_service

router = APIRouter(prefix="/api/news", tags=["财经新闻"])


@router.get("/ticker/{ticker}", response_model=ApiResponse)
async def ticker_news(
    ticker: str,
    user_id: str = Depends(get_current_user),
    svc: NewsService = Depends(get_news_service),
):
    items = await svc.get_news_for_ticker(ticker)
    return ApiResponse.ok(data={"ticker": ticker.upper(), "count": len(items), "items": items})


@router.get("/{category}", response_model=ApiResponse)
async def category_news(
    category: str,
    user_id: str = Depends(get_current_user),
    svc: NewsService = Depends(get_news_service),
):
    if category not in FEEDS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"未知新闻分类: {category}，可选: {', '.join(FEEDS)}",
        )
    items = await svc.get_news_by_category(category)
    return ApiResponse.ok(data={"category": category, "count": len(items), "items": items})

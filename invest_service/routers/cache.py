"""
缓存管理路由
GET  /api/cache/stats          - 命中率 / 大小 / 淘汰统计
GET  /api/cache/refresh-queue  - 带标签写入过的股票代码
POST /api/cache/clear          - 清空投资缓存
POST /api/cache/reset-stats    - 重置统计计数
POST /api/cache/invalidate     - 按键或前缀删除缓存
"""

from fastapi import APIRouter, Depends

from invest_service.layers.cache import InvestingCache, get_investing_cache
from invest_service.models.investing import InvalidateRequest
from invest_service.models.response import ApiResponse
from invest_service.routers.auth import get_current_user

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(
    user_id: str = Depends(get_current_user),
    cache: InvestingCache = Depends(get_investing_cache),
):
    """获取缓存统计信息"""
    return ApiResponse.ok(data=await cache.get_stats())


@router.get("/refresh-queue", response_model=ApiResponse)
async def refresh_queue(
    user_id: str = Depends(get_current_user),
    cache: InvestingCache = Depends(get_investing_cache),
):
    tickers = await cache.get_refresh_queue()
    return ApiResponse.ok(data={"count": len(tickers), "tickers": tickers})


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(
    user_id: str = Depends(get_current_user),
    cache: InvestingCache = Depends(get_investing_cache),
):
    """清空所有缓存条目与统计"""
    await cache.clear_all()
    return ApiResponse.ok(message="缓存已清空")


@router.post("/reset-stats", response_model=ApiResponse)
async def reset_stats(
    user_id: str = Depends(get_current_user),
    cache: InvestingCache = Depends(get_investing_cache),
):
    await cache.reset_stats()
    return ApiResponse.ok(message="缓存统计已重置")


@router.post("/invalidate", response_model=ApiResponse)
async def invalidate(
    body: InvalidateRequest,
    user_id: str = Depends(get_current_user),
    cache: InvestingCache = Depends(get_investing_cache),
):
    """删除单个键，或删除所有以前缀开头的键"""
    if body.key:
        await cache.invalidate(body.key)
        return ApiResponse.ok(data={"removed": 1}, message=f"缓存已删除: {body.key}")
    removed = await cache.invalidate_pattern(body.prefix)
    return ApiResponse.ok(data={"removed": removed}, message=f"缓存已删除: {body.prefix}*")

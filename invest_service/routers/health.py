"""健康检查路由"""

import time

from fastapi import APIRouter, Request

from invest_service import __version__
from invest_service.db import check_health

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(request: Request):
    """服务健康检查（含数据库状态与缓存模式）"""
    db_health = await check_health()
    cache = getattr(request.app.state, "investing_cache", None)
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "invest-service",
            "databases": db_health,
            "cache_mode": "redis" if cache is not None and cache.enabled else "passthrough",
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Kubernetes readiness probe：服务对象创建完成即就绪"""
    return {"ready": getattr(request.app.state, "price_service", None) is not None}

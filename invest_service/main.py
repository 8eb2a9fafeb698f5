"""
投资数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn invest_service.main:app --host 0.0.0.0 --port 8002
    python -m invest_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invest_service import __version__
from invest_service.config import settings
from invest_service.db import close_connections, get_mongo_db, get_redis, init_mongodb, init_redis
from invest_service.errors import (
    InsufficientQuantity,
    NotFound,
    PersistenceFailure,
    UpstreamUnavailable,
)
from invest_service.layers.acquisition import TwelveDataClient
from invest_service.layers.cache import InvestingCache
from invest_service.layers.persistence import MongoPortfolioStore, MongoPriceStore
from invest_service.models.response import ApiResponse
from invest_service.routers import cache, health, news, portfolio, stocks
from invest_service.services.analytics_service import AnalyticsService
from invest_service.services.news_service import NewsService
from invest_service.services.price_service import PriceService

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """按当前可用的数据库连接创建服务对象并挂到 app.state"""
    db = get_mongo_db()
    investing_cache = InvestingCache(get_redis())
    price_store = MongoPriceStore(db) if db is not None else None
    portfolio_store = MongoPortfolioStore(db) if db is not None else None

    twelve_data = TwelveDataClient()
    price_service = PriceService(
        twelve_data,
        investing_cache,
        price_store=price_store,
        portfolio_store=portfolio_store,
    )
    app.state.investing_cache = investing_cache
    app.state.twelve_data = twelve_data
    app.state.price_service = price_service
    app.state.analytics_service = (
        AnalyticsService(price_service, investing_cache, portfolio_store)
        if portfolio_store is not None
        else None
    )
    app.state.news_service = NewsService(investing_cache)


async def shutdown_services(app: FastAPI) -> None:
    """等待后台刷新与回写结束，关闭 HTTP 客户端"""
    price_service = getattr(app.state, "price_service", None)
    investing_cache = getattr(app.state, "investing_cache", None)
    if investing_cache is not None:
        await investing_cache.wait_for_refreshes()
    if price_service is not None:
        await price_service.wait_for_background()
    twelve_data = getattr(app.state, "twelve_data", None)
    if twelve_data is not None:
        await twelve_data.aclose()
    news_service = getattr(app.state, "news_service", None)
    if news_service is not None:
        await news_service.aclose()


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Invest Service v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   限流间隔  : {settings.TWELVE_DATA_MIN_INTERVAL}s")
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，投资缓存以直通模式运行")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，跳过永久价格存储，组合接口不可用")
    else:
        logger.warning("⚠️ 数据库均不可用，仅提供直连行情接口")

    build_services(app)

    yield

    logger.info("🔄 投资数据服务正在关闭...")
    await shutdown_services(app)
    await close_connections()
    logger.info("✅ 投资数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Invest Service",
    description=(
        "投资组合数据微服务，提供以下功能：\n"
        "- 📊 行情数据（Twelve Data，限流 8 次/分钟）\n"
        "- 🗄️ 分层价格查询（MongoDB → Redis 缓存 → 接口）\n"
        "- 💼 组合估值（FIFO 已实现盈亏 / 市值曲线 / 基准对比）\n"
        "- 📰 财经新闻\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 限流拉取行情\n"
        "Cache Layer        ← LRU + TTL + stale-while-revalidate\n"
        "Processing Layer   ← 日线清洗、标准化\n"
        "Analysis Layer     ← 估值指标计算\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
def _fail(status_code: int, error: str, message: str) -> JSONResponse:
    return ApiResponse.fail(error=error, message=message).to_json(status_code)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _fail(status.HTTP_404_NOT_FOUND, "资源不存在", exc.message)


@app.exception_handler(UpstreamUnavailable)
async def upstream_handler(request: Request, exc: UpstreamUnavailable):
    logger.error(exc.message)
    return _fail(status.HTTP_502_BAD_GATEWAY, "行情接口不可用", exc.message)


@app.exception_handler(InsufficientQuantity)
async def insufficient_quantity_handler(request: Request, exc: InsufficientQuantity):
    return _fail(status.HTTP_400_BAD_REQUEST, "卖出数量不足", exc.message)


@app.exception_handler(PersistenceFailure)
async def persistence_handler(request: Request, exc: PersistenceFailure):
    logger.error(exc.message)
    return _fail(status.HTTP_503_SERVICE_UNAVAILABLE, "数据库不可用", exc.message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return _fail(status.HTTP_500_INTERNAL_SERVER_ERROR, "内部服务错误", str(exc))


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(stocks.router)
app.include_router(portfolio.router)
app.include_router(cache.router)
app.include_router(news.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "invest-service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "invest_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )

import atexit
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware

# 日志配置在其他模块之前加载
from ib_portal.logging_config import root_logger  # noqa: F401
from ib_portal import __version__
from ib_portal.api import commission, sync, trades
from ib_portal.api.deps import limiter
from ib_portal.config import settings
from ib_portal.database import init_db, is_sqlite
from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.scheduler import shutdown_scheduler, start_scheduler
from ib_portal.services.sync_orchestrator import TradeSyncOrchestrator

logger = logging.getLogger(__name__)

app = FastAPI(title="IB Portal Commission Engine", version=__version__)

# 速率限制：按客户端 IP
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# 进程内共享：分析缓存 + 同步编排器（调度器和手动触发共用一把运行锁）
app.state.analytics_cache = AnalyticsCache(
    ttl=settings.ANALYTICS_CACHE_TTL_SECONDS,
    maxsize=settings.ANALYTICS_CACHE_MAXSIZE,
)
app.state.orchestrator = TradeSyncOrchestrator(cache=app.state.analytics_cache)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin"],
    max_age=3600,
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """添加安全响应头"""
    response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """未处理异常统一返回 JSON 500"""
    logger.error(f"未处理异常 {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        },
    )


app.include_router(sync.router)
app.include_router(commission.router)
app.include_router(trades.router)


@app.get("/health")
async def health(request: Request):
    orchestrator = request.app.state.orchestrator
    return {"status": "ok", "version": __version__, "sync_running": orchestrator.is_running}


@app.on_event("startup")
async def startup_event():
    """应用启动时执行"""
    if is_sqlite:
        # 本地 SQLite 直接建表，PostgreSQL 走 alembic
        init_db()
    if not settings.SYNC_ENABLED:
        logger.info("自动同步已关闭（SYNC_ENABLED=false）")
        return
    try:
        start_scheduler(app.state.orchestrator)
    except Exception as e:
        # 调度器启动失败不阻止应用启动
        logger.error(f"定时任务调度器启动失败: {e}", exc_info=True)


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭时执行：等待当前账号处理完"""
    shutdown_scheduler()


atexit.register(shutdown_scheduler)

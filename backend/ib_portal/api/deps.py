"""
路由公共依赖
"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.sync_orchestrator import TradeSyncOrchestrator

# 速率限制器（main 中挂到 app.state.limiter）
limiter = Limiter(key_func=get_remote_address)


def get_orchestrator(request: Request) -> TradeSyncOrchestrator:
    return request.app.state.orchestrator


def get_analytics_cache(request: Request) -> AnalyticsCache:
    return request.app.state.analytics_cache

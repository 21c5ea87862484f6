"""
交易同步 API
手动触发全量同步、单个 IB 回补
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status

from ib_portal.api.deps import get_orchestrator, limiter
from ib_portal.config import settings
from ib_portal.middleware.auth import AdminPrincipal, get_current_admin
from ib_portal.schemas.trade import PartnerSyncResponse, SyncAcceptedResponse
from ib_portal.services.commission_aggregator import PartnerNotFound
from ib_portal.services.sync_orchestrator import SyncAlreadyRunning, TradeSyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _run_in_background(orchestrator: TradeSyncOrchestrator, window_days: int, requested_by: str) -> None:
    try:
        orchestrator.run_once(window_days)
    except SyncAlreadyRunning:
        logger.info(f"[AutoSync] {requested_by} 触发的同步被忽略：已有同步在执行")


@router.post("/run", response_model=SyncAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("6/minute")
async def run_sync(
    request: Request,  # 速率限制需要 Request 对象
    background_tasks: BackgroundTasks,
    days: Optional[int] = Query(None, ge=1, le=365, description="同步窗口天数，默认 SYNC_WINDOW_DAYS"),
    orchestrator: TradeSyncOrchestrator = Depends(get_orchestrator),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """后台执行一轮全量同步，立即返回 202"""
    if orchestrator.is_running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="已有同步任务在执行")

    window_days = days or settings.SYNC_WINDOW_DAYS
    background_tasks.add_task(_run_in_background, orchestrator, window_days, admin.username)
    logger.info(f"[AutoSync] {admin.username} 手动触发全量同步，窗口 {window_days} 天")
    return {"message": "同步已开始", "window_days": window_days}


@router.post("/partners/{partner_id}", response_model=PartnerSyncResponse)
def sync_partner(
    partner_id: int,
    days: Optional[int] = Query(None, ge=1, le=365, description="回补天数，默认 BACKFILL_WINDOW_DAYS"),
    orchestrator: TradeSyncOrchestrator = Depends(get_orchestrator),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """同步（回补）单个 IB，完成后返回汇总"""
    logger.info(f"[AutoSync] {admin.username} 手动同步 IB {partner_id}")
    try:
        return orchestrator.sync_partner(partner_id, days)
    except PartnerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SyncAlreadyRunning as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

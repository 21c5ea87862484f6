"""
定时任务调度器

- 每 SYNC_INTERVAL_MINUTES 分钟执行一轮交易同步（最近 SYNC_WINDOW_DAYS 天）
- 启动后延迟 SYNC_INITIAL_DELAY_SECONDS 秒先跑一次
"""
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ib_portal.config import settings
from ib_portal.services.sync_orchestrator import SyncAlreadyRunning, TradeSyncOrchestrator
from ib_portal.utils.timeutils import utc_now

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")

_orchestrator: Optional[TradeSyncOrchestrator] = None


def trade_sync_job():
    """定时交易同步任务"""
    if _orchestrator is None:
        logger.warning("[AutoSync] 编排器未初始化，跳过")
        return
    try:
        _orchestrator.run_once(settings.SYNC_WINDOW_DAYS)
    except SyncAlreadyRunning:
        logger.info("[AutoSync] 上一轮同步尚未结束，跳过本次触发")
    except Exception as e:
        logger.error(f"[AutoSync] 定时同步执行失败: {e}", exc_info=True)


def start_scheduler(orchestrator: TradeSyncOrchestrator) -> None:
    """启动定时任务调度器"""
    global _orchestrator
    if scheduler.running:
        logger.warning("调度器已在运行")
        return

    _orchestrator = orchestrator
    scheduler.add_job(
        trade_sync_job,
        trigger=IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
        id="trade_sync_interval",
        name=f"交易同步（每 {settings.SYNC_INTERVAL_MINUTES} 分钟）",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        trade_sync_job,
        trigger=DateTrigger(run_date=utc_now() + timedelta(seconds=settings.SYNC_INITIAL_DELAY_SECONDS),
                            timezone="UTC"),
        id="trade_sync_initial",
        name="启动后首次交易同步",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        f"定时任务调度器已启动: 每 {settings.SYNC_INTERVAL_MINUTES} 分钟同步一次，"
        f"{settings.SYNC_INITIAL_DELAY_SECONDS} 秒后首次执行"
    )


def shutdown_scheduler() -> None:
    """关闭调度器：发出停止信号，等当前账号处理完再退出"""
    if _orchestrator is not None:
        _orchestrator.stop_event.set()
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("定时任务调度器已关闭")

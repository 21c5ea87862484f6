"""
交易同步编排

每一轮：
1. 选出所有已批准的 IB
2. 为每个 IB 加载规则表（组分配，或默认费率的通配规则）
3. 枚举账号：IB 本人的交易账号 + 其 active 推荐用户的交易账号
4. 每个账号独立处理：登录 -> 拉取窗口内已平仓交易 -> 查询当前交易组 -> 入库 -> 重算 IB 及上级 IB 佣金
5. IB 的账号全部处理完后再重算一次，最终快照不受并发处理顺序影响
6. 单个账号失败只计数记录，不影响其他账号和其他 IB；整轮结束输出汇总

不在同一轮内重试，下一轮就是重试。
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ib_portal.config import settings
from ib_portal.database import SessionLocal
from ib_portal.logging_config import AlertLevel, log_alert
from ib_portal.models.partner import Partner, PartnerStatus
from ib_portal.models.referral import EDGE_ACTIVE, ReferralEdge
from ib_portal.models.trading_account import TradingAccount
from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.commission_aggregator import (
    CommissionAggregator,
    PartnerNotFound,
    approved_ancestor_ids,
    load_rule_map,
)
from ib_portal.services.commission_rules import RuleMap
from ib_portal.services.mt5_client import MT5ApiClient, MT5ApiError, MT5AuthError
from ib_portal.services.trade_store import TradeContext, TradeStoreService
from ib_portal.utils.timeutils import utc_now

logger = logging.getLogger(__name__)

# 单账号处理结果
STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_AUTH_FAILED = "auth_failed"
STATUS_CANCELLED = "cancelled"


class SyncAlreadyRunning(RuntimeError):
    """已有一轮同步在执行"""


@dataclass
class AccountJob:
    """一个待同步账号（不持有 ORM 对象，跨线程安全）"""
    partner_id: int
    account_id: str
    user_id: int
    password: Optional[str]


@dataclass
class PartnerSummary:
    partner_id: int
    accounts: int = 0
    succeeded: int = 0
    failed: int = 0
    auth_failed: int = 0
    cancelled: int = 0
    trades_stored: int = 0
    trades_skipped: int = 0
    unattributed: int = 0
    failed_accounts: List[str] = field(default_factory=list)
    commission: Optional[Dict[str, Any]] = None

    def record(self, account_id: str, outcome: Dict[str, Any]) -> None:
        status = outcome["status"]
        if status == STATUS_OK:
            self.succeeded += 1
            self.trades_stored += outcome.get("stored", 0)
            self.trades_skipped += outcome.get("skipped", 0)
            self.unattributed += outcome.get("unattributed", 0)
            if outcome.get("commission") is not None:
                self.commission = outcome["commission"]
        elif status == STATUS_AUTH_FAILED:
            self.auth_failed += 1
            self.failed_accounts.append(account_id)
        elif status == STATUS_CANCELLED:
            self.cancelled += 1
        else:
            self.failed += 1
            self.failed_accounts.append(account_id)

    def to_dict(self) -> Dict[str, Any]:
        commission = None
        if self.commission is not None:
            commission = {
                "fixed": str(self.commission["fixed"]),
                "spread_share": str(self.commission["spread_share"]),
                "total": str(self.commission["total"]),
                "total_trades": self.commission["total_trades"],
                "total_lots": str(self.commission["total_lots"]),
            }
        return {
            "partner_id": self.partner_id,
            "accounts": self.accounts,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "auth_failed": self.auth_failed,
            "cancelled": self.cancelled,
            "trades_stored": self.trades_stored,
            "trades_skipped": self.trades_skipped,
            "unattributed": self.unattributed,
            "failed_accounts": list(self.failed_accounts),
            "commission": commission,
        }


def enumerate_accounts(db: Session, partner: Partner) -> List[AccountJob]:
    """IB 本人的交易账号 + active 推荐用户的交易账号（按账号号排序、去重）"""
    referred = select(ReferralEdge.user_id).where(
        ReferralEdge.partner_id == partner.id,
        ReferralEdge.status == EDGE_ACTIVE,
    )
    conditions = [TradingAccount.user_id.in_(referred)]
    if partner.user_id is not None:
        conditions.append(TradingAccount.user_id == partner.user_id)

    accounts = db.query(TradingAccount).filter(
        TradingAccount.is_active == True,  # noqa: E712
        or_(*conditions),
    ).order_by(TradingAccount.account_id).all()

    return [
        AccountJob(partner_id=partner.id, account_id=a.account_id, user_id=a.user_id, password=a.password)
        for a in accounts
    ]


class TradeSyncOrchestrator:
    """
    交易同步编排器

    一个实例由调度器和手动触发接口共享；同一时间只允许一轮同步（非阻塞锁，重叠的请求直接拒绝）。
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client: Optional[MT5ApiClient] = None,
        cache: Optional[AnalyticsCache] = None,
        max_workers: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.client = client or MT5ApiClient()
        self.cache = cache
        self.max_workers = max_workers or settings.SYNC_MAX_WORKERS
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def _acquire(self) -> None:
        if not self._run_lock.acquire(blocking=False):
            raise SyncAlreadyRunning("已有同步任务在执行")

    # ---------- 单账号流水线 ----------

    def _aggregate_with_ancestors(self, db: Session, partner_id: int, rule_map: Optional[RuleMap] = None):
        """重算 IB 及其已批准上级的佣金快照（上级的范围包含子 IB 的用户）。不提交事务"""
        aggregator = CommissionAggregator(db, cache=self.cache, clock=self.clock)
        commission = aggregator.aggregate(partner_id, rule_map=rule_map)
        for ancestor_id in approved_ancestor_ids(db, partner_id):
            aggregator.aggregate(ancestor_id)
        return commission

    def _refresh_snapshots(self, partner_id: int, rule_map: RuleMap) -> Optional[Dict[str, Any]]:
        """IB 所有账号处理完后的收尾重算，最终快照与账号处理顺序无关"""
        db = self.session_factory()
        try:
            commission = self._aggregate_with_ancestors(db, partner_id, rule_map)
            db.commit()
            return commission
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[AutoSync] IB {partner_id} 佣金重算失败: {e}", extra={"partner_id": partner_id},
                         exc_info=True)
            return None
        finally:
            db.close()

    def _sync_account(self, job: AccountJob, rule_map: RuleMap, window_days: int) -> Dict[str, Any]:
        """单账号：登录 -> 拉取 -> 查组 -> 入库 -> 重算佣金。异常在此边界内消化为状态"""
        if self.stop_event.is_set():
            return {"status": STATUS_CANCELLED}

        log_extra = {"account_id": job.account_id, "partner_id": job.partner_id}
        db = self.session_factory()
        try:
            token = self.client.login(job.account_id, job.password)
            date_to = self.clock()
            date_from = date_to - timedelta(days=window_days)
            trades = self.client.get_closed_trades(job.account_id, date_from, date_to, token=token)
            try:
                group = self.client.get_client_profile_group(job.account_id, token=token)
            except MT5ApiError as e:
                # 已拉到的交易照常入库，交易组沿用库里已有的记录
                logger.warning(f"[AutoSync] 账号 {job.account_id} 查询交易组失败: {e}", extra=log_extra)
                group = None

            ctx = TradeContext(
                account_id=job.account_id,
                user_id=job.user_id,
                partner_id=job.partner_id,
                rule_map=rule_map,
                group_at_sync=group,
            )
            result = TradeStoreService(db, clock=self.clock).upsert_trades(trades, ctx)
            db.commit()

            # 交易已提交，再重算佣金
            commission = self._aggregate_with_ancestors(db, job.partner_id, rule_map)
            db.commit()

            return {
                "status": STATUS_OK,
                "stored": result.stored,
                "skipped": result.skipped_total,
                "unattributed": result.unattributed,
                "commission": commission,
            }
        except MT5AuthError as e:
            db.rollback()
            logger.warning(f"[AutoSync] 账号 {job.account_id} 无法登录，本轮跳过: {e}", extra=log_extra)
            return {"status": STATUS_AUTH_FAILED, "error": str(e)}
        except MT5ApiError as e:
            db.rollback()
            logger.error(f"[AutoSync] 账号 {job.account_id} MT5 请求失败: {e}", extra=log_extra)
            return {"status": STATUS_FAILED, "error": str(e)}
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[AutoSync] 账号 {job.account_id} 数据库写入失败: {e}", extra=log_extra, exc_info=True)
            return {"status": STATUS_FAILED, "error": str(e)}
        except Exception as e:
            db.rollback()
            logger.error(f"[AutoSync] 账号 {job.account_id} 同步异常: {e}", extra=log_extra, exc_info=True)
            return {"status": STATUS_FAILED, "error": str(e)}
        finally:
            db.close()

    def _run_jobs(self, jobs: List[AccountJob], rule_map: RuleMap, window_days: int,
                  summary: PartnerSummary) -> None:
        summary.accounts += len(jobs)
        if self.max_workers <= 1 or len(jobs) <= 1:
            for job in jobs:
                summary.record(job.account_id, self._sync_account(job, rule_map, window_days))
            return

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="trade-sync") as pool:
            futures = [
                (job, pool.submit(self._sync_account, job, rule_map, window_days))
                for job in jobs
            ]
            for job, future in futures:
                summary.record(job.account_id, future.result())

    # ---------- IB 级 ----------

    def _load_partner_jobs(self, partner_id: int):
        db = self.session_factory()
        try:
            partner = db.get(Partner, partner_id)
            if partner is None:
                raise PartnerNotFound(f"IB {partner_id} 不存在")
            return load_rule_map(db, partner), enumerate_accounts(db, partner)
        finally:
            db.close()

    def _sync_partner(self, partner_id: int, window_days: int) -> PartnerSummary:
        summary = PartnerSummary(partner_id=partner_id)
        rule_map, jobs = self._load_partner_jobs(partner_id)
        logger.info(f"[AutoSync] IB {partner_id}: {len(jobs)} 个账号, {len(rule_map)} 条规则, 窗口 {window_days} 天")
        self._run_jobs(jobs, rule_map, window_days, summary)
        # 没有账号的 IB 也要重算（范围内可能有子 IB 的用户）
        commission = self._refresh_snapshots(partner_id, rule_map)
        if commission is not None:
            summary.commission = commission
        return summary

    # ---------- 入口 ----------

    def run_once(self, window_days: Optional[int] = None) -> Dict[str, Any]:
        """
        执行一轮全量同步

        Raises:
            SyncAlreadyRunning: 已有一轮在执行
        """
        window_days = window_days or settings.SYNC_WINDOW_DAYS
        self._acquire()
        started = self.clock()
        try:
            return self._run_all(window_days, started)
        finally:
            self._run_lock.release()

    def _run_all(self, window_days: int, started: datetime) -> Dict[str, Any]:
        run = {
            "started_at": started,
            "window_days": window_days,
            "partners": 0,
            "accounts": 0,
            "succeeded": 0,
            "failed": 0,
            "auth_failed": 0,
            "cancelled": 0,
            "trades_stored": 0,
            "partner_failures": 0,
            "partner_results": [],
        }

        db = self.session_factory()
        try:
            partner_ids = [
                pid for (pid,) in db.query(Partner.id).filter(
                    Partner.status == PartnerStatus.APPROVED
                ).order_by(Partner.id).all()
            ]
        except SQLAlchemyError as e:
            log_alert(
                logger,
                AlertLevel.P0_CRITICAL,
                "交易同步无法执行",
                f"读取 IB 列表失败: {e}",
                suggested_actions=["检查数据库连接"],
            )
            run["error"] = str(e)
            run["finished_at"] = self.clock()
            return run
        finally:
            db.close()

        run["partners"] = len(partner_ids)
        logger.info(f"[AutoSync] 开始同步: {len(partner_ids)} 个 IB, 窗口 {window_days} 天")

        for partner_id in partner_ids:
            if self.stop_event.is_set():
                logger.info("[AutoSync] 收到停止信号，结束本轮")
                break
            try:
                summary = self._sync_partner(partner_id, window_days)
            except (SQLAlchemyError, PartnerNotFound) as e:
                run["partner_failures"] += 1
                logger.error(f"[AutoSync] IB {partner_id} 加载失败: {e}", extra={"partner_id": partner_id})
                continue
            for key in ("accounts", "succeeded", "failed", "auth_failed", "cancelled", "trades_stored"):
                run[key] += getattr(summary, key)
            run["partner_results"].append(summary.to_dict())

        run["finished_at"] = self.clock()
        failed_accounts = [
            account_id for result in run["partner_results"] for account_id in result["failed_accounts"]
        ]
        logger.info(
            f"[AutoSync] 同步完成: IB {run['partners']}, 账号 {run['accounts']} "
            f"(成功 {run['succeeded']}, 失败 {run['failed']}, 无法登录 {run['auth_failed']}, "
            f"取消 {run['cancelled']}), 入库 {run['trades_stored']} 笔"
        )
        if failed_accounts or run["partner_failures"]:
            log_alert(
                logger,
                AlertLevel.P1_URGENT,
                "交易同步部分失败",
                f"本轮 {len(failed_accounts)}/{run['accounts']} 个账号失败, {run['partner_failures']} 个 IB 加载失败",
                context={"failed_accounts": failed_accounts[:50]},
                suggested_actions=["检查 MT5 API 是否可用", "检查账号密码是否已配置"],
            )
        return run

    def sync_partner(self, partner_id: int, window_days: Optional[int] = None) -> Dict[str, Any]:
        """手动同步/回补单个 IB（不要求已批准）"""
        window_days = window_days or settings.BACKFILL_WINDOW_DAYS
        self._acquire()
        try:
            summary = self._sync_partner(partner_id, window_days)
        finally:
            self._run_lock.release()
        result = summary.to_dict()
        result["window_days"] = window_days
        return result

    def sync_account(self, account_id: str, window_days: Optional[int] = None) -> Dict[str, Any]:
        """
        手动同步单个账号

        归属 IB：账号所属用户的 active 推荐关系；没有时取以该用户为本人的 IB。

        Raises:
            LookupError: 账号不存在或找不到归属 IB
        """
        window_days = window_days or settings.BACKFILL_WINDOW_DAYS
        db = self.session_factory()
        try:
            account = db.get(TradingAccount, str(account_id))
            if account is None:
                raise LookupError(f"账号 {account_id} 不存在")
            edge = db.query(ReferralEdge).filter(
                ReferralEdge.user_id == account.user_id,
                ReferralEdge.status == EDGE_ACTIVE,
            ).order_by(ReferralEdge.id.desc()).first()
            if edge is not None:
                partner = db.get(Partner, edge.partner_id)
            else:
                partner = db.query(Partner).filter(Partner.user_id == account.user_id).first()
            if partner is None:
                raise LookupError(f"账号 {account_id} 没有归属 IB")
            rule_map = load_rule_map(db, partner)
            job = AccountJob(
                partner_id=partner.id,
                account_id=account.account_id,
                user_id=account.user_id,
                password=account.password,
            )
        finally:
            db.close()

        self._acquire()
        try:
            summary = PartnerSummary(partner_id=job.partner_id)
            self._run_jobs([job], rule_map, window_days, summary)
        finally:
            self._run_lock.release()
        result = summary.to_dict()
        result["account_id"] = job.account_id
        result["window_days"] = window_days
        return result

"""
IB 佣金汇总服务

核心功能：
1. 确定 IB 的佣金范围：active 推荐关系直属用户 + 子 IB 体系下的用户，排除 IB 本人
2. 按当前规则对范围内每笔交易重新匹配（规则调整后历史佣金随之重算）
3. 按被推荐用户写入 commission_snapshots，computed_at 即快照时间
4. 读取时 cache-aside：快照在新鲜期内直接返回，过期或强制时重算
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ib_portal.config import settings
from ib_portal.database import upsert
from ib_portal.models.commission_snapshot import CommissionSnapshot
from ib_portal.models.group_assignment import GroupAssignment
from ib_portal.models.partner import Partner, PartnerStatus
from ib_portal.models.referral import EDGE_ACTIVE, ReferralEdge
from ib_portal.models.trade_record import TradeRecord
from ib_portal.models.trading_account import TradingAccount
from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.commission_rules import RuleMap, build_rule_map, resolve_for_group, to_decimal
from ib_portal.utils.timeutils import utc_now

logger = logging.getLogger(__name__)

MONEY = Decimal(settings.MONEY_QUANT)
LOTS = Decimal("0.0001")

SNAPSHOT_UPDATE_FIELDS = (
    "fixed_commission", "spread_commission", "total_commission",
    "total_trades", "total_lots", "computed_at",
)


class PartnerNotFound(LookupError):
    """IB 不存在"""


def _money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # PostgreSQL 返回带时区的时间，SQLite 返回 naive
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def load_rule_map(db: Session, partner: Partner) -> RuleMap:
    """IB 当前的规则表（没有组分配时为默认费率的通配规则）"""
    assignments = db.query(GroupAssignment).filter(
        GroupAssignment.partner_id == partner.id
    ).order_by(GroupAssignment.id).all()
    return build_rule_map(
        assignments,
        default_usd_per_lot=partner.default_usd_per_lot,
        default_spread_share_percent=partner.default_spread_share_percent,
    )


def referred_user_ids(db: Session, partner: Partner) -> Set[int]:
    """
    IB 的佣金范围（用户 ID 集合）

    直属：active 推荐关系指向该 IB 的用户。
    子 IB：上级为该 IB 的 IB（递归），其本人用户和其 active 推荐用户。
    IB 本人的用户始终排除，即使存在指向自己的推荐关系。
    """
    user_ids: Set[int] = set()
    visited: Set[int] = set()
    pending = [partner.id]

    while pending:
        current_id = pending.pop()
        if current_id in visited:
            continue
        visited.add(current_id)

        rows = db.query(ReferralEdge.user_id).filter(
            ReferralEdge.partner_id == current_id,
            ReferralEdge.status == EDGE_ACTIVE,
        ).all()
        user_ids.update(user_id for (user_id,) in rows)

        for sub_id, sub_user_id in db.query(Partner.id, Partner.user_id).filter(
            Partner.referred_by_id == current_id
        ).all():
            if sub_user_id is not None:
                user_ids.add(sub_user_id)
            pending.append(sub_id)

    if partner.user_id is not None:
        user_ids.discard(partner.user_id)
    return user_ids


def approved_ancestor_ids(db: Session, partner_id: int) -> List[int]:
    """沿 referred_by_id 向上的所有已批准上级 IB（由近到远）"""
    ancestors: List[int] = []
    visited = {partner_id}
    current = db.query(Partner.referred_by_id).filter(Partner.id == partner_id).scalar()
    while current is not None and current not in visited:
        visited.add(current)
        row = db.query(Partner.status, Partner.referred_by_id).filter(Partner.id == current).first()
        if row is None:
            break
        status, parent_id = row
        if status == PartnerStatus.APPROVED:
            ancestors.append(current)
        current = parent_id
    return ancestors


class CommissionAggregator:
    """IB 佣金汇总"""

    def __init__(
        self,
        db: Session,
        cache: Optional[AnalyticsCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.cache = cache
        self.clock = clock

    def _get_partner(self, partner_id: int, reload: bool = False) -> Partner:
        partner = self.db.get(Partner, partner_id, populate_existing=reload)
        if partner is None:
            raise PartnerNotFound(f"IB {partner_id} 不存在")
        return partner

    def aggregate(self, partner_id: int, rule_map: Optional[RuleMap] = None) -> Dict[str, Any]:
        """
        重算 IB 佣金并写入快照

        每笔交易按存储的同步时交易组、用 IB 当前规则重新匹配，不复用入库时的佣金。
        不提交事务。

        Args:
            partner_id: IB ID
            rule_map: 调用方已加载的规则表，不传则从数据库读取

        Returns:
            {"fixed", "spread_share", "total", "total_trades", "total_lots", "computed_at"}
        """
        partner = self._get_partner(partner_id)
        if rule_map is None:
            rule_map = load_rule_map(self.db, partner)
        user_ids = referred_user_ids(self.db, partner)
        now = self.clock()

        per_user: Dict[int, Dict[str, Any]] = defaultdict(
            lambda: {"fixed": Decimal("0"), "spread": Decimal("0"), "trades": 0, "lots": Decimal("0")}
        )
        unattributed = 0

        if user_ids:
            # 以账号归属为准（交易上的 user_id 只是入库时的快照）
            trades = self.db.query(
                TradingAccount.user_id,
                TradeRecord.volume_lots,
                TradeRecord.group_id,
            ).join(
                TradingAccount, TradingAccount.account_id == TradeRecord.account_id
            ).filter(
                TradingAccount.user_id.in_(sorted(user_ids))
            ).order_by(TradeRecord.id).all()

            for user_id, volume_lots, group_id in trades:
                volume = to_decimal(volume_lots)
                bucket = per_user[user_id]
                bucket["trades"] += 1
                bucket["lots"] += volume
                rule = resolve_for_group(group_id, rule_map)
                if rule is None:
                    unattributed += 1
                    continue
                bucket["fixed"] += rule.fixed_for(volume)
                bucket["spread"] += rule.spread_for(volume)

        totals = {
            "fixed": Decimal("0.00"),
            "spread_share": Decimal("0.00"),
            "total": Decimal("0.00"),
            "total_trades": 0,
            "total_lots": Decimal("0.0000"),
        }

        for user_id in sorted(per_user):
            bucket = per_user[user_id]
            fixed = _money(bucket["fixed"])
            spread = _money(bucket["spread"])
            lots = bucket["lots"].quantize(LOTS, rounding=ROUND_HALF_UP)
            upsert(
                self.db,
                CommissionSnapshot,
                {
                    "partner_id": partner.id,
                    "referred_user_id": user_id,
                    "fixed_commission": fixed,
                    "spread_commission": spread,
                    "total_commission": fixed + spread,
                    "total_trades": bucket["trades"],
                    "total_lots": lots,
                    "computed_at": now,
                },
                conflict_columns=("partner_id", "referred_user_id"),
                update_columns=SNAPSHOT_UPDATE_FIELDS,
            )
            totals["fixed"] += fixed
            totals["spread_share"] += spread
            totals["total_trades"] += bucket["trades"]
            totals["total_lots"] += lots

        # 已移出范围（或已无交易）的用户不再保留快照
        stale = self.db.query(CommissionSnapshot).filter(CommissionSnapshot.partner_id == partner.id)
        if per_user:
            stale = stale.filter(CommissionSnapshot.referred_user_id.notin_(list(per_user)))
        removed = stale.delete(synchronize_session=False)

        totals["total"] = totals["fixed"] + totals["spread_share"]
        totals["computed_at"] = now
        partner.commission_computed_at = now

        if self.cache is not None:
            self.cache.invalidate_partner(partner.id)

        logger.info(
            f"[Aggregator] IB {partner.id}: 用户 {len(per_user)}/{len(user_ids)}, 交易 {totals['total_trades']}, "
            f"佣金 {totals['total']} (固定 {totals['fixed']} + 点差 {totals['spread_share']}), "
            f"无归属 {unattributed}, 清理快照 {removed}",
            extra={"partner_id": partner.id, "total_trades": totals["total_trades"], "unattributed": unattributed},
        )
        return totals

    def _snapshot_totals(self, partner: Partner) -> Optional[Dict[str, Any]]:
        # 快照由 upsert 语句写入，不能复用会话里已加载的旧对象
        rows = self.db.query(CommissionSnapshot).populate_existing().filter(
            CommissionSnapshot.partner_id == partner.id
        ).all()
        if not rows:
            if partner.commission_computed_at is None:
                return None
            # 算过但范围内没有交易
            return {
                "fixed": Decimal("0.00"),
                "spread_share": Decimal("0.00"),
                "total": Decimal("0.00"),
                "total_trades": 0,
                "total_lots": Decimal("0.0000"),
                "computed_at": _naive_utc(partner.commission_computed_at),
            }
        fixed = sum((to_decimal(r.fixed_commission) for r in rows), Decimal("0.00"))
        spread = sum((to_decimal(r.spread_commission) for r in rows), Decimal("0.00"))
        return {
            "fixed": fixed,
            "spread_share": spread,
            "total": fixed + spread,
            "total_trades": sum(r.total_trades or 0 for r in rows),
            "total_lots": sum((to_decimal(r.total_lots) for r in rows), Decimal("0.0000")),
            # 最旧的一行决定整体新鲜度
            "computed_at": min(_naive_utc(r.computed_at) for r in rows),
        }

    def get_commission(
        self,
        partner_id: int,
        max_age: Optional[timedelta] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        读取 IB 佣金（cache-aside）

        快照存在且未超过 max_age 时直接返回快照，否则重算。
        重算会写库并提交。

        Args:
            partner_id: IB ID
            max_age: 新鲜期，默认 SNAPSHOT_FRESHNESS_HOURS
            force: 忽略快照强制重算

        Returns:
            aggregate() 的结果，外加 from_cache
        """
        if max_age is None:
            max_age = timedelta(hours=settings.SNAPSHOT_FRESHNESS_HOURS)
        partner = self._get_partner(partner_id, reload=True)

        if not force:
            cached = self._snapshot_totals(partner)
            if cached is not None and self.clock() - cached["computed_at"] < max_age:
                cached["from_cache"] = True
                return cached

        try:
            result = self.aggregate(partner_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        result["from_cache"] = False
        return result

    def per_user_breakdown(self, partner_id: int) -> List[Dict[str, Any]]:
        """按被推荐用户列出快照（佣金从高到低），结果进分析缓存"""
        self._get_partner(partner_id)

        def load() -> List[Dict[str, Any]]:
            rows = self.db.query(CommissionSnapshot).populate_existing().filter(
                CommissionSnapshot.partner_id == partner_id
            ).order_by(
                CommissionSnapshot.total_commission.desc(),
                CommissionSnapshot.referred_user_id,
            ).all()
            return [
                {
                    "referred_user_id": r.referred_user_id,
                    "fixed_commission": to_decimal(r.fixed_commission),
                    "spread_commission": to_decimal(r.spread_commission),
                    "total_commission": to_decimal(r.total_commission),
                    "total_trades": r.total_trades or 0,
                    "total_lots": to_decimal(r.total_lots),
                    "computed_at": _naive_utc(r.computed_at),
                }
                for r in rows
            ]

        if self.cache is None:
            return load()
        return self.cache.get_or_set(("breakdown", partner_id), load)

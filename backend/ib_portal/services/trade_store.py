"""
交易入库服务

核心功能：
1. 兼容新旧两种交易接口的字段（trades-closed / trades）
2. 判定已平仓、换算手数、跳过无效交易并按原因计数
3. 按同步时的交易组匹配规则，计算每笔交易的固定佣金
4. 以 (account_id, external_id) 为自然键原子 upsert，重复同步结果不变
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ib_portal.config import settings
from ib_portal.database import upsert
from ib_portal.models.trade_record import TradeRecord
from ib_portal.services.commission_rules import RuleMap, resolve_for_group, to_decimal
from ib_portal.utils.timeutils import utc_now

logger = logging.getLogger(__name__)

MONEY = Decimal(settings.MONEY_QUANT)
LOTS = Decimal("0.0001")

# 上游用来表示"没有值"的字符串
_SENTINEL_IDS = {"", "0", "none", "null", "undefined", "nan"}

# 任一字段有值即视为有平仓时间
CLOSE_TIME_FIELDS = (
    "CloseTime", "ClosedTime", "CloseDate", "Closed", "TimeClose", "DoneTime",
    "DealTime", "CloseTimeMsc", "CloseTimeMs", "ClosedAt", "Time",
)

# upsert 冲突时允许覆盖的字段；自然键与 created_at 不在其中
MUTABLE_FIELDS = (
    "user_id", "partner_id", "volume_lots", "close_price", "profit", "take_profit",
    "stop_loss", "close_time", "group_id", "commission", "updated_at", "synced_at",
)

SKIP_REASONS = ("no_id", "no_symbol", "not_closed", "no_volume", "error")


@dataclass
class TradeContext:
    """一次入库调用的上下文"""
    account_id: str
    user_id: Optional[int]
    partner_id: Optional[int]
    rule_map: RuleMap
    group_at_sync: Optional[str] = None


@dataclass
class UpsertResult:
    """入库结果统计"""
    received: int = 0
    stored: int = 0
    unattributed: int = 0
    skipped: Dict[str, int] = field(default_factory=lambda: {reason: 0 for reason in SKIP_REASONS})

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "stored": self.stored,
            "unattributed": self.unattributed,
            "skipped": dict(self.skipped),
        }


class _SkipTrade(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _field(trade: Dict, *names: str) -> Any:
    """按候选字段名取值，大小写不敏感，跳过 None 和空串"""
    lowered = None
    for name in names:
        value = trade.get(name)
        if value is None:
            if lowered is None:
                lowered = {str(k).lower(): v for k, v in trade.items()}
            value = lowered.get(name.lower())
        if value is not None and value != "":
            return value
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """平仓时间：ISO 字符串 或 epoch 秒/毫秒，统一为 naive UTC"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        if seconds <= 0:
            return None
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.isdigit():
            return _parse_timestamp(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def extract_external_id(trade: Dict) -> Optional[str]:
    raw = _field(trade, "OrderId", "DealId", "Ticket", "Order", "Deal")
    if raw is None:
        return None
    external_id = str(raw).strip()
    if external_id.lower() in _SENTINEL_IDS:
        return None
    return external_id


def has_close_time(trade: Dict) -> bool:
    return _field(trade, *CLOSE_TIME_FIELDS) is not None


def is_closed_trade(trade: Dict) -> bool:
    """
    已平仓判定（全系统唯一口径）

    有非零盈亏、或有非零平仓价、或有任一平仓时间字段，满足其一即可。
    """
    profit = to_decimal(_field(trade, "Profit"))
    close_price = to_decimal(_field(trade, "ClosePrice", "Price"))
    return profit != 0 or close_price != 0 or has_close_time(trade)


def extract_volume_lots(trade: Dict) -> Decimal:
    """
    手数换算

    trades-closed 接口的 VolumeLots 以 1/100 手为单位；
    旧接口的 Volume 小于 0.1 时是千分之一手单位，需要乘 1000。
    """
    volume_lots = _field(trade, "VolumeLots")
    if volume_lots is not None:
        lots = to_decimal(volume_lots) / Decimal("100")
    else:
        volume = to_decimal(_field(trade, "Volume"))
        lots = volume * Decimal("1000") if volume < Decimal("0.1") else volume
    return lots.quantize(LOTS, rounding=ROUND_HALF_UP)


def extract_direction(trade: Dict) -> str:
    raw = _field(trade, "OrderType", "Type", "Direction", "Action")
    text = str(raw).strip().lower() if raw is not None else ""
    if text in ("buy", "0"):
        return "buy"
    if text in ("sell", "1"):
        return "sell"
    # 接口没给方向时按盈亏符号推断
    return "buy" if to_decimal(_field(trade, "Profit")) >= 0 else "sell"


def compute_commission(volume_lots: Decimal, rule_map: RuleMap, group_id: Optional[str]):
    """返回 (固定佣金, 匹配到的规则)；无法归属时佣金为 0"""
    rule = resolve_for_group(group_id, rule_map)
    if rule is None:
        return Decimal("0.00"), None
    return rule.fixed_for(volume_lots).quantize(MONEY, rounding=ROUND_HALF_UP), rule


class TradeStoreService:
    """交易入库服务"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def _build_row(self, trade: Dict, ctx: TradeContext, now: datetime,
                   stored_groups: Dict[str, str]) -> Dict[str, Any]:
        external_id = extract_external_id(trade)
        if not external_id:
            raise _SkipTrade("no_id")

        symbol = str(_field(trade, "Symbol") or "").strip()
        if not symbol:
            raise _SkipTrade("no_symbol")

        if not is_closed_trade(trade):
            raise _SkipTrade("not_closed")

        volume_lots = extract_volume_lots(trade)
        if volume_lots == 0:
            raise _SkipTrade("no_volume")

        open_price = to_decimal(_field(trade, "OpenPrice"))
        close_price = to_decimal(_field(trade, "ClosePrice", "Price"))
        # 本次没拿到交易组时沿用库里记录的同步时交易组
        group_id = ctx.group_at_sync or stored_groups.get(external_id)
        commission, rule = compute_commission(volume_lots, ctx.rule_map, group_id)

        return {
            "account_id": str(ctx.account_id),
            "external_id": external_id,
            "user_id": ctx.user_id,
            "partner_id": ctx.partner_id,
            "symbol": symbol,
            "direction": extract_direction(trade),
            "volume_lots": volume_lots,
            "open_price": open_price,
            "close_price": close_price if close_price != 0 else open_price,
            "profit": to_decimal(_field(trade, "Profit")).quantize(MONEY, rounding=ROUND_HALF_UP),
            "take_profit": to_decimal(_field(trade, "TakeProfit")),
            "stop_loss": to_decimal(_field(trade, "StopLoss")),
            "close_time": _parse_timestamp(_field(trade, *CLOSE_TIME_FIELDS)),
            "group_id": group_id,
            "commission": commission,
            "updated_at": now,
            "synced_at": now,
            "_attributed": rule is not None,
        }

    def _stored_groups(self, account_id: str) -> Dict[str, str]:
        """账号下已入库交易的同步时交易组（external_id -> group_id）"""
        rows = self.db.query(TradeRecord.external_id, TradeRecord.group_id).filter(
            TradeRecord.account_id == str(account_id),
            TradeRecord.group_id.isnot(None),
        ).all()
        return {external_id: group_id for external_id, group_id in rows}

    def upsert_trades(self, trades: Iterable[Dict], ctx: TradeContext) -> UpsertResult:
        """
        批量入库

        单笔交易数据异常只计数不抛出；数据库异常直接抛给调用方（由调用方回滚）。
        不提交事务。

        Args:
            trades: MT5 接口返回的原始交易列表
            ctx: 账号 / 用户 / IB / 规则表 / 同步时交易组

        Returns:
            UpsertResult
        """
        result = UpsertResult()
        now = self.clock()
        rows: Dict[str, Dict[str, Any]] = {}
        stored_groups = {} if ctx.group_at_sync else self._stored_groups(ctx.account_id)

        for trade in trades:
            result.received += 1
            if not isinstance(trade, dict):
                result.skipped["error"] += 1
                continue
            try:
                row = self._build_row(trade, ctx, now, stored_groups)
            except _SkipTrade as skip:
                result.skipped[skip.reason] += 1
                continue
            except (ArithmeticError, TypeError, ValueError, OverflowError, OSError) as e:
                result.skipped["error"] += 1
                logger.warning(f"[TradeStore] 账号 {ctx.account_id} 交易解析失败: {e}, 交易: {trade}")
                continue
            # 同一批次里重复出现的订单以最后一次为准
            rows[row["external_id"]] = row

        for row in rows.values():
            attributed = row.pop("_attributed")
            upsert(
                self.db,
                TradeRecord,
                row,
                conflict_columns=("account_id", "external_id"),
                update_columns=MUTABLE_FIELDS,
                keep_if_null=("group_id",),
            )
            result.stored += 1
            if not attributed:
                result.unattributed += 1

        duplicates = result.received - result.skipped_total - len(rows)
        logger.info(
            f"[TradeStore] 账号 {ctx.account_id}: 入库 {result.stored}/{result.received}, "
            f"跳过 {result.skipped}, 无归属 {result.unattributed}, 批内重复 {duplicates}",
            extra={"account_id": str(ctx.account_id), "partner_id": ctx.partner_id, **result.to_dict()},
        )
        return result

    def list_trades(
        self,
        user_id: Optional[int] = None,
        partner_id: Optional[int] = None,
        account_id: Optional[str] = None,
        group_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """分页查询已入库交易（按同步时间倒序）"""
        query = self.db.query(TradeRecord)
        if user_id is not None:
            query = query.filter(TradeRecord.user_id == user_id)
        if partner_id is not None:
            query = query.filter(TradeRecord.partner_id == partner_id)
        if account_id:
            query = query.filter(TradeRecord.account_id == str(account_id))
        if group_id:
            query = query.filter(TradeRecord.group_id == group_id)

        total = query.count()
        items = query.order_by(TradeRecord.synced_at.desc(), TradeRecord.id.desc()).offset(offset).limit(limit).all()
        return {
            "items": items,
            "total": total,
            "page": offset // (limit or 1) + 1,
            "page_size": limit,
        }

    def account_stats(self, user_id: int) -> List[Dict[str, Any]]:
        """按交易账号汇总：笔数 / 手数 / 盈亏 / 佣金"""
        rows = self.db.query(
            TradeRecord.account_id,
            func.count(TradeRecord.id),
            func.coalesce(func.sum(TradeRecord.volume_lots), 0),
            func.coalesce(func.sum(TradeRecord.profit), 0),
            func.coalesce(func.sum(TradeRecord.commission), 0),
        ).filter(
            TradeRecord.user_id == user_id
        ).group_by(TradeRecord.account_id).order_by(TradeRecord.account_id).all()

        return [
            {
                "account_id": account_id,
                "trade_count": int(count or 0),
                "total_volume": to_decimal(volume),
                "total_profit": to_decimal(profit),
                "total_commission": to_decimal(commission),
            }
            for account_id, count, volume, profit, commission in rows
        ]

    def last_sync_time(self, account_id: str) -> Optional[datetime]:
        return self.db.query(func.max(TradeRecord.synced_at)).filter(
            TradeRecord.account_id == str(account_id)
        ).scalar()

"""
佣金 Schema
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class CommissionTotalsResponse(BaseModel):
    """IB 佣金汇总"""
    partner_id: int
    fixed: Decimal
    spread_share: Decimal
    total: Decimal
    total_trades: int
    total_lots: Decimal
    computed_at: datetime  # 快照时间
    from_cache: bool  # True 表示直接读取的未过期快照


class CommissionUserRow(BaseModel):
    """单个被推荐用户的佣金快照"""
    referred_user_id: int
    fixed_commission: Decimal
    spread_commission: Decimal
    total_commission: Decimal
    total_trades: int
    total_lots: Decimal
    computed_at: Optional[datetime]


class CommissionBreakdownResponse(BaseModel):
    partner_id: int
    users: List[CommissionUserRow]

"""
交易与同步 Schema
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class TradeRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: str
    external_id: str
    user_id: Optional[int]
    partner_id: Optional[int]
    symbol: str
    direction: Optional[str]
    volume_lots: Decimal
    open_price: Optional[Decimal]
    close_price: Optional[Decimal]
    profit: Optional[Decimal]
    close_time: Optional[datetime]
    group_id: Optional[str]
    commission: Decimal
    synced_at: Optional[datetime]


class TradeListResponse(BaseModel):
    items: List[TradeRecordResponse]
    total: int
    page: int
    page_size: int


class AccountStatsRow(BaseModel):
    """按交易账号汇总"""
    account_id: str
    trade_count: int
    total_volume: Decimal
    total_profit: Decimal
    total_commission: Decimal
    last_sync_time: Optional[datetime] = None


class SyncAcceptedResponse(BaseModel):
    message: str
    window_days: int


class PartnerSyncResponse(BaseModel):
    """单个 IB 的同步汇总"""
    partner_id: int
    window_days: int
    accounts: int
    succeeded: int
    failed: int
    auth_failed: int
    cancelled: int
    trades_stored: int
    trades_skipped: int
    unattributed: int
    failed_accounts: List[str]
    commission: Optional[Dict[str, Any]] = None

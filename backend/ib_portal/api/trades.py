"""
交易记录 API
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ib_portal.database import get_db
from ib_portal.middleware.auth import AdminPrincipal, get_current_admin
from ib_portal.schemas.trade import AccountStatsRow, TradeListResponse
from ib_portal.services.trade_store import TradeStoreService

router = APIRouter(prefix="/api/trades", tags=["trades"])


@router.get("", response_model=TradeListResponse)
def list_trades(
    user_id: Optional[int] = Query(None),
    partner_id: Optional[int] = Query(None),
    account_id: Optional[str] = Query(None),
    group_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """分页查询已入库交易，最近同步的在前"""
    return TradeStoreService(db).list_trades(
        user_id=user_id,
        partner_id=partner_id,
        account_id=account_id,
        group_id=group_id,
        limit=limit,
        offset=offset,
    )


@router.get("/stats/{user_id}", response_model=List[AccountStatsRow])
def get_account_stats(
    user_id: int,
    db: Session = Depends(get_db),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """用户各交易账号的笔数 / 手数 / 盈亏 / 佣金"""
    service = TradeStoreService(db)
    rows = service.account_stats(user_id)
    for row in rows:
        row["last_sync_time"] = service.last_sync_time(row["account_id"])
    return rows

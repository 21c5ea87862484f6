"""
IB 佣金 API
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ib_portal.api.deps import get_analytics_cache
from ib_portal.database import get_db
from ib_portal.middleware.auth import AdminPrincipal, get_current_admin
from ib_portal.schemas.commission import CommissionBreakdownResponse, CommissionTotalsResponse
from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.commission_aggregator import CommissionAggregator, PartnerNotFound

router = APIRouter(prefix="/api/commission", tags=["commission"])


@router.get("/{partner_id}", response_model=CommissionTotalsResponse)
def get_partner_commission(
    partner_id: int,
    force: bool = Query(False, description="忽略快照强制重算"),
    db: Session = Depends(get_db),
    cache: AnalyticsCache = Depends(get_analytics_cache),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """
    IB 佣金汇总

    快照在新鲜期内直接返回（from_cache=true），否则重算后返回。
    """
    try:
        result = CommissionAggregator(db, cache=cache).get_commission(partner_id, force=force)
    except PartnerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"partner_id": partner_id, **result}


@router.get("/{partner_id}/users", response_model=CommissionBreakdownResponse)
def get_partner_commission_users(
    partner_id: int,
    db: Session = Depends(get_db),
    cache: AnalyticsCache = Depends(get_analytics_cache),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    """按被推荐用户列出佣金快照"""
    try:
        users = CommissionAggregator(db, cache=cache).per_user_breakdown(partner_id)
    except PartnerNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"partner_id": partner_id, "users": users}

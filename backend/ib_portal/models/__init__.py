"""
数据模型
"""
from ib_portal.models.user import User
from ib_portal.models.partner import Partner, PartnerStatus
from ib_portal.models.group_assignment import GroupAssignment, replace_group_assignments
from ib_portal.models.trading_account import TradingAccount
from ib_portal.models.referral import ReferralEdge, ReferralHistory, assign_referral, deactivate_referral
from ib_portal.models.trade_record import TradeRecord
from ib_portal.models.commission_snapshot import CommissionSnapshot

__all__ = [
    "User",
    "Partner",
    "PartnerStatus",
    "GroupAssignment",
    "replace_group_assignments",
    "TradingAccount",
    "ReferralEdge",
    "ReferralHistory",
    "assign_referral",
    "deactivate_referral",
    "TradeRecord",
    "CommissionSnapshot",
]

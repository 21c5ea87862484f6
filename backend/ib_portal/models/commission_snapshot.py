"""
佣金快照模型

按 (IB, 被推荐用户) 物化的佣金汇总，computed_at 即快照时间。
只由聚合器写入，读取方可以在新鲜期内直接使用。
"""
from sqlalchemy import Column, Integer, DateTime, Numeric, UniqueConstraint

from ib_portal.database import Base


class CommissionSnapshot(Base):
    __tablename__ = "commission_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(Integer, nullable=False, index=True)
    referred_user_id = Column(Integer, nullable=False, index=True)
    fixed_commission = Column(Numeric(15, 2), default=0, nullable=False)
    spread_commission = Column(Numeric(15, 2), default=0, nullable=False)
    total_commission = Column(Numeric(15, 2), default=0, nullable=False)
    total_trades = Column(Integer, default=0, nullable=False)
    total_lots = Column(Numeric(15, 4), default=0, nullable=False)
    computed_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("partner_id", "referred_user_id", name="uq_commission_snapshot_partner_user"),
    )

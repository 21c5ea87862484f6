"""
IB 合作伙伴模型
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ib_portal.database import Base


class PartnerStatus(str, enum.Enum):
    """IB 申请状态"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BANNED = "banned"


class Partner(Base):
    __tablename__ = "partners"

    id = Column(Integer, primary_key=True, index=True)
    # 合作伙伴本人的 CRM 用户（本人交易账号不计佣金）
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    referral_code = Column(String(16), unique=True, nullable=True, index=True)
    # 上级 IB（子 IB 体系）
    referred_by_id = Column(Integer, ForeignKey("partners.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(Enum(PartnerStatus), nullable=False, default=PartnerStatus.PENDING, index=True)

    # 没有任何组分配时使用的通配规则（'*'）
    default_usd_per_lot = Column(Numeric(10, 2), default=0, nullable=False)
    default_spread_share_percent = Column(Numeric(5, 2), default=0, nullable=False)
    # 最近一次佣金重算时间（没有任何快照行时也有值）
    commission_computed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", foreign_keys=[user_id])
    referred_by = relationship("Partner", remote_side=[id], foreign_keys=[referred_by_id])
    group_assignments = relationship(
        "GroupAssignment",
        back_populates="partner",
        cascade="all, delete-orphan",
        order_by="GroupAssignment.id",
    )

    @property
    def is_approved(self) -> bool:
        return self.status == PartnerStatus.APPROVED

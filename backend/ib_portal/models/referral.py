"""
推荐关系模型

ReferralEdge: 交易用户 -> 推荐他的 IB。一个用户同一时间最多一条 active 记录。
ReferralHistory: 变更流水（只追加，不覆盖不删除）。
"""
import logging
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import Session, relationship
from sqlalchemy.sql import func

from ib_portal.database import Base

logger = logging.getLogger(__name__)

EDGE_ACTIVE = "active"
EDGE_INACTIVE = "inactive"


class ReferralEdge(Base):
    __tablename__ = "referral_edges"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=EDGE_ACTIVE, index=True)
    source = Column(String(32), nullable=True, default="crm")
    linked_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    partner = relationship("Partner")
    user = relationship("User")

    __table_args__ = (
        Index("idx_referral_edge_partner_status", "partner_id", "status"),
        Index("idx_referral_edge_user_status", "user_id", "status"),
    )


class ReferralHistory(Base):
    __tablename__ = "referral_history"

    id = Column(Integer, primary_key=True, index=True)
    edge_id = Column(Integer, ForeignKey("referral_edges.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, nullable=False, index=True)
    from_partner_id = Column(Integer, nullable=True)
    to_partner_id = Column(Integer, nullable=True)
    action = Column(String(20), nullable=False)  # created / moved / deactivated
    moved_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


def get_active_edge(db: Session, user_id: int) -> Optional[ReferralEdge]:
    return db.query(ReferralEdge).filter(
        ReferralEdge.user_id == user_id,
        ReferralEdge.status == EDGE_ACTIVE,
    ).order_by(ReferralEdge.id.desc()).first()


def assign_referral(
    db: Session,
    user_id: int,
    partner_id: int,
    source: str = "crm",
    moved_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> ReferralEdge:
    """把用户挂到某个 IB 名下

    已有 active 关系时先置为 inactive 并记录 moved 流水，再新建 active 关系。
    指向同一个 IB 时直接返回现有关系。不提交事务。
    """
    current = get_active_edge(db, user_id)
    if current is not None and current.partner_id == partner_id:
        return current

    from_partner_id = current.partner_id if current is not None else None
    if current is not None:
        current.status = EDGE_INACTIVE
        db.add(ReferralHistory(
            edge_id=current.id,
            user_id=user_id,
            from_partner_id=from_partner_id,
            to_partner_id=partner_id,
            action="moved",
            moved_by=moved_by,
            notes=notes or f"Moved from {from_partner_id} to {partner_id}",
        ))

    edge = ReferralEdge(user_id=user_id, partner_id=partner_id, status=EDGE_ACTIVE, source=source)
    db.add(edge)
    db.flush()

    db.add(ReferralHistory(
        edge_id=edge.id,
        user_id=user_id,
        from_partner_id=from_partner_id,
        to_partner_id=partner_id,
        action="created",
        moved_by=moved_by,
        notes=notes,
    ))
    db.flush()
    logger.info(f"[Referral] user {user_id}: {from_partner_id} -> {partner_id}")
    return edge


def deactivate_referral(db: Session, user_id: int, moved_by: Optional[str] = None, notes: Optional[str] = None) -> bool:
    """解除用户当前的推荐关系（软删除，保留流水）"""
    current = get_active_edge(db, user_id)
    if current is None:
        return False
    current.status = EDGE_INACTIVE
    db.add(ReferralHistory(
        edge_id=current.id,
        user_id=user_id,
        from_partner_id=current.partner_id,
        to_partner_id=None,
        action="deactivated",
        moved_by=moved_by,
        notes=notes,
    ))
    db.flush()
    return True

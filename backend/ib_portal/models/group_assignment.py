"""
IB 交易组佣金分配

一个 IB 可以同时被批准多个交易组，每个组对应一条规则（每手固定佣金 + 点差分成比例）。
审批/编辑时整体替换，不做局部修改。
"""
from typing import Iterable, Mapping

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import Session, relationship
from sqlalchemy.sql import func

from ib_portal.database import Base


class GroupAssignment(Base):
    __tablename__ = "group_assignments"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String(255), nullable=False)  # 如 real\Bbook\Standard\dynamic-2000x-20Pips
    group_name = Column(String(255), nullable=True)  # 可读名称
    structure_name = Column(String(255), nullable=True)
    usd_per_lot = Column(Numeric(10, 2), default=0, nullable=False)
    spread_share_percent = Column(Numeric(5, 2), default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    partner = relationship("Partner", back_populates="group_assignments")


def replace_group_assignments(db: Session, partner_id: int, assignments: Iterable[Mapping]) -> list:
    """整体替换某个 IB 的组分配（审批流程的输出）

    assignments 每项包含 group_id，可选 group_name / structure_name / usd_per_lot / spread_share_percent。
    不提交事务，由调用方决定。
    """
    db.query(GroupAssignment).filter(GroupAssignment.partner_id == partner_id).delete(
        synchronize_session=False
    )
    created = []
    for item in assignments:
        group_id = str(item.get("group_id") or "").strip()
        if not group_id:
            continue
        row = GroupAssignment(
            partner_id=partner_id,
            group_id=group_id,
            group_name=item.get("group_name"),
            structure_name=item.get("structure_name"),
            usd_per_lot=item.get("usd_per_lot") or 0,
            spread_share_percent=item.get("spread_share_percent") or 0,
        )
        db.add(row)
        created.append(row)
    db.flush()
    return created

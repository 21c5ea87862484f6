"""
交易记录模型

自然键 (account_id, external_id) 全局唯一，是同步幂等的依据。
commission 是写入时按当时规则算出的投影值，不是独立的事实来源。
"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, UniqueConstraint, Index
from sqlalchemy.sql import func

from ib_portal.database import Base


class TradeRecord(Base):
    __tablename__ = "trade_records"

    id = Column(Integer, primary_key=True, index=True)

    # 交易标识
    account_id = Column(String(32), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)  # MT5 OrderId / DealId

    # 归属
    user_id = Column(Integer, nullable=True, index=True)
    partner_id = Column(Integer, nullable=True, index=True)  # 执行同步的 IB

    # 交易信息
    symbol = Column(String(32), nullable=False, index=True)
    direction = Column(String(8), nullable=False)  # buy / sell
    volume_lots = Column(Numeric(15, 4), nullable=False)
    open_price = Column(Numeric(18, 6), nullable=True)
    close_price = Column(Numeric(18, 6), nullable=True)
    profit = Column(Numeric(15, 2), nullable=True)
    take_profit = Column(Numeric(18, 6), nullable=True)
    stop_loss = Column(Numeric(18, 6), nullable=True)
    close_time = Column(DateTime(timezone=True), nullable=True)

    # 同步时账号所在的交易组
    group_id = Column(String(255), nullable=True, index=True)
    commission = Column(Numeric(15, 2), default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    synced_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uq_trade_record_account_external"),
        Index("idx_trade_record_user_synced", "user_id", "synced_at"),
    )

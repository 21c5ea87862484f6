"""
MT5 交易账号
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ib_portal.database import Base


class TradingAccount(Base):
    __tablename__ = "trading_accounts"

    account_id = Column(String(32), primary_key=True)  # MT5 登录号
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    password = Column(String(255), nullable=True)  # 用于 ClientAuth/login 换取 token
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="trading_accounts")

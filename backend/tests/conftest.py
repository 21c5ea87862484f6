"""
测试公共夹具：内存 SQLite + 数据构造函数
"""
import os

os.environ.setdefault("SYNC_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ib_portal.database import Base
from ib_portal.services.mt5_client import MT5AuthError
from ib_portal.models import (
    GroupAssignment,
    Partner,
    PartnerStatus,
    TradingAccount,
    User,
    assign_referral,
)

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


class Factory:
    """测试数据构造"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, email=None) -> User:
        n = self._next()
        user = User(email=email or f"user{n}@example.com", name=f"User {n}")
        self.db.add(user)
        self.db.flush()
        return user

    def partner(self, user=None, status=PartnerStatus.APPROVED, referred_by=None,
                default_usd_per_lot=0, default_spread_share_percent=0) -> Partner:
        n = self._next()
        partner = Partner(
            user_id=user.id if user is not None else None,
            email=f"ib{n}@example.com",
            name=f"IB {n}",
            referral_code=f"REF{n:05d}",
            referred_by_id=referred_by.id if referred_by is not None else None,
            status=status,
            default_usd_per_lot=Decimal(str(default_usd_per_lot)),
            default_spread_share_percent=Decimal(str(default_spread_share_percent)),
        )
        self.db.add(partner)
        self.db.flush()
        return partner

    def assignment(self, partner, group_id, usd_per_lot, spread_share_percent, group_name=None) -> GroupAssignment:
        row = GroupAssignment(
            partner_id=partner.id,
            group_id=group_id,
            group_name=group_name,
            usd_per_lot=Decimal(str(usd_per_lot)),
            spread_share_percent=Decimal(str(spread_share_percent)),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def account(self, user, account_id=None, password="secret", is_active=True) -> TradingAccount:
        account = TradingAccount(
            account_id=str(account_id or 100000 + self._next()),
            user_id=user.id,
            password=password,
            is_active=is_active,
        )
        self.db.add(account)
        self.db.flush()
        return account

    def refer(self, user, partner):
        return assign_referral(self.db, user.id, partner.id, source="test")


@pytest.fixture
def factory(db):
    return Factory(db)


def closed_trade(deal_id, volume_lots=250, symbol="EURUSD", profit=12.5, **extra):
    """trades-closed 接口格式的一笔交易（VolumeLots 单位为 1/100 手）"""
    trade = {
        "DealId": deal_id,
        "Symbol": symbol,
        "OrderType": "Buy",
        "VolumeLots": volume_lots,
        "OpenPrice": 1.0850,
        "ClosePrice": 1.0875,
        "Profit": profit,
        "CloseTime": "2026-01-14T08:30:00Z",
    }
    trade.update(extra)
    return trade


class FakeMT5Client:
    """按账号返回预设的交易 / 交易组 / 异常"""

    def __init__(self, trades=None, groups=None, failures=None,
                 default_group="real\\Bbook\\Standard\\dynamic-2000x-20Pips"):
        self.trades = trades or {}
        self.groups = groups or {}
        self.failures = failures or {}
        self.default_group = default_group
        self.logins = []
        self.trade_calls = []

    def login(self, account_id, password):
        self.logins.append(account_id)
        if not password:
            raise MT5AuthError(f"账号 {account_id} 未配置密码")
        if account_id in self.failures:
            raise self.failures[account_id]
        return f"token-{account_id}"

    def get_closed_trades(self, account_id, date_from, date_to, token=None):
        self.trade_calls.append((account_id, date_from, date_to, token))
        return list(self.trades.get(account_id, []))

    def get_client_profile_group(self, account_id, token=None):
        return self.groups.get(account_id, self.default_group)

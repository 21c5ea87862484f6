"""
测试 IB 佣金汇总
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import FIXED_NOW, closed_trade
from ib_portal.models import CommissionSnapshot, replace_group_assignments
from ib_portal.services.analytics_cache import AnalyticsCache
from ib_portal.services.commission_aggregator import (
    CommissionAggregator,
    PartnerNotFound,
    load_rule_map,
    referred_user_ids,
)
from ib_portal.services.trade_store import TradeContext, TradeStoreService

GROUP = "real\\Bbook\\Standard\\dynamic-2000x-20Pips"


class Scenario:
    """IB（本人也有交易账号并错误地挂在自己名下）+ 一个被推荐用户"""

    def __init__(self, db, factory, clock):
        self.db = db
        self.clock = clock
        self.owner = factory.user()
        self.partner = factory.partner(user=self.owner)
        factory.assignment(self.partner, "standard", usd_per_lot=5, spread_share_percent=10)

        self.client = factory.user()
        factory.refer(self.client, self.partner)
        factory.refer(self.owner, self.partner)
        self.client_account = factory.account(self.client, account_id="200001")
        self.owner_account = factory.account(self.owner, account_id="200002")
        db.commit()

    def store(self, account, user, trades, group=GROUP):
        ctx = TradeContext(
            account_id=account.account_id,
            user_id=user.id,
            partner_id=self.partner.id,
            rule_map=load_rule_map(self.db, self.partner),
            group_at_sync=group,
        )
        result = TradeStoreService(self.db, clock=self.clock).upsert_trades(trades, ctx)
        self.db.commit()
        return result


@pytest.fixture
def scenario(db, factory, clock):
    return Scenario(db, factory, clock)


class TestAggregate:

    def test_example_trade_totals(self, db, scenario, clock):
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])

        totals = CommissionAggregator(db, clock=clock).aggregate(scenario.partner.id)
        db.commit()

        assert totals["fixed"] == Decimal("12.50")
        assert totals["spread_share"] == Decimal("0.25")
        assert totals["total"] == Decimal("12.75")
        assert totals["total_trades"] == 1
        assert totals["total_lots"] == Decimal("2.5")
        assert totals["computed_at"] == FIXED_NOW

        snapshot = db.query(CommissionSnapshot).one()
        assert snapshot.referred_user_id == scenario.client.id
        assert snapshot.total_commission == Decimal("12.75")
        assert snapshot.computed_at == FIXED_NOW

    def test_resubmitted_trade_counted_once(self, db, scenario, clock):
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])

        totals = CommissionAggregator(db, clock=clock).aggregate(scenario.partner.id)
        assert totals["total"] == Decimal("12.75")
        assert totals["total_trades"] == 1

    def test_partner_own_account_excluded(self, db, scenario, clock):
        scenario.store(scenario.owner_account, scenario.owner, [closed_trade(50, volume_lots=1000)])
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])

        assert scenario.owner.id not in referred_user_ids(db, scenario.partner)
        totals = CommissionAggregator(db, clock=clock).aggregate(scenario.partner.id)
        db.commit()

        assert totals["total"] == Decimal("12.75")
        user_ids = {s.referred_user_id for s in db.query(CommissionSnapshot).all()}
        assert user_ids == {scenario.client.id}

    def test_recompute_converges(self, db, scenario, clock):
        scenario.store(scenario.client_account, scenario.client, [
            closed_trade(1, volume_lots=250),
            closed_trade(2, volume_lots=133),
            closed_trade(3, volume_lots=7),
        ])
        aggregator = CommissionAggregator(db, clock=clock)

        first = aggregator.aggregate(scenario.partner.id)
        db.commit()
        rows_first = [(s.referred_user_id, s.total_commission, s.total_lots) for s in db.query(CommissionSnapshot)]
        second = aggregator.aggregate(scenario.partner.id)
        db.commit()
        db.expire_all()
        rows_second = [(s.referred_user_id, s.total_commission, s.total_lots) for s in db.query(CommissionSnapshot)]

        assert first == second
        assert rows_first == rows_second

    def test_rule_change_recomputes_history(self, db, scenario, clock):
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])
        aggregator = CommissionAggregator(db, clock=clock)
        assert aggregator.aggregate(scenario.partner.id)["total"] == Decimal("12.75")

        replace_group_assignments(db, scenario.partner.id, [
            {"group_id": "standard", "usd_per_lot": 8, "spread_share_percent": 20},
        ])
        db.commit()

        totals = aggregator.aggregate(scenario.partner.id)
        assert totals["fixed"] == Decimal("20.00")
        assert totals["spread_share"] == Decimal("0.50")
        assert totals["total"] == Decimal("20.50")

    def test_sub_partner_users_in_scope(self, db, factory, scenario, clock):
        sub_owner = factory.user()
        sub_partner = factory.partner(user=sub_owner, referred_by=scenario.partner)
        sub_client = factory.user()
        factory.refer(sub_client, sub_partner)
        sub_owner_account = factory.account(sub_owner, account_id="300001")
        sub_client_account = factory.account(sub_client, account_id="300002")
        db.commit()

        scenario.store(sub_owner_account, sub_owner, [closed_trade(10, volume_lots=100)])
        scenario.store(sub_client_account, sub_client, [closed_trade(11, volume_lots=100)])

        assert referred_user_ids(db, scenario.partner) == {scenario.client.id, sub_owner.id, sub_client.id}
        # 子 IB 自己的范围里不包含子 IB 本人
        assert referred_user_ids(db, sub_partner) == {sub_client.id}

        totals = CommissionAggregator(db, clock=clock).aggregate(scenario.partner.id)
        assert totals["total_trades"] == 2
        assert totals["fixed"] == Decimal("10.00")

    def test_moved_user_snapshot_removed(self, db, factory, scenario, clock):
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])
        aggregator = CommissionAggregator(db, clock=clock)
        aggregator.aggregate(scenario.partner.id)
        db.commit()

        other = factory.partner()
        factory.refer(scenario.client, other)
        db.commit()

        totals = aggregator.aggregate(scenario.partner.id)
        db.commit()
        assert totals["total"] == Decimal("0")
        assert db.query(CommissionSnapshot).filter(
            CommissionSnapshot.partner_id == scenario.partner.id
        ).count() == 0

    def test_unknown_partner(self, db, clock):
        with pytest.raises(PartnerNotFound):
            CommissionAggregator(db, clock=clock).aggregate(999)


class TestGetCommission:
    """快照新鲜期内直接读取，过期或强制时重算"""

    def test_cache_aside(self, db, scenario):
        now = {"value": FIXED_NOW}
        aggregator = CommissionAggregator(db, clock=lambda: now["value"])
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])

        first = aggregator.get_commission(scenario.partner.id)
        assert first["from_cache"] is False
        assert first["total"] == Decimal("12.75")

        now["value"] = FIXED_NOW + timedelta(hours=1)
        cached = aggregator.get_commission(scenario.partner.id)
        assert cached["from_cache"] is True
        assert cached["total"] == Decimal("12.75")
        assert cached["computed_at"] == FIXED_NOW

        forced = aggregator.get_commission(scenario.partner.id, force=True)
        assert forced["from_cache"] is False
        assert forced["computed_at"] == now["value"]

        now["value"] = now["value"] + timedelta(hours=5)
        stale = aggregator.get_commission(scenario.partner.id)
        assert stale["from_cache"] is False

    def test_custom_max_age(self, db, scenario):
        now = {"value": FIXED_NOW}
        aggregator = CommissionAggregator(db, clock=lambda: now["value"])
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])
        aggregator.get_commission(scenario.partner.id)

        now["value"] = FIXED_NOW + timedelta(minutes=10)
        assert aggregator.get_commission(scenario.partner.id, max_age=timedelta(minutes=5))["from_cache"] is False
        assert aggregator.get_commission(scenario.partner.id, max_age=timedelta(hours=1))["from_cache"] is True

    def test_no_trades_keeps_computed_at(self, db, scenario):
        now = {"value": FIXED_NOW}
        aggregator = CommissionAggregator(db, clock=lambda: now["value"])
        result = aggregator.get_commission(scenario.partner.id)
        assert result["from_cache"] is False
        assert result["total"] == Decimal("0")
        assert db.query(CommissionSnapshot).count() == 0

        now["value"] = FIXED_NOW + timedelta(hours=1)
        cached = aggregator.get_commission(scenario.partner.id)
        assert cached["from_cache"] is True
        assert cached["total"] == Decimal("0")
        assert cached["total_trades"] == 0
        assert cached["computed_at"] == FIXED_NOW

        now["value"] = FIXED_NOW + timedelta(hours=5)
        assert aggregator.get_commission(scenario.partner.id)["from_cache"] is False


class TestPerUserBreakdown:

    def test_breakdown_cached_until_next_aggregate(self, db, factory, scenario, clock):
        second = factory.user()
        factory.refer(second, scenario.partner)
        second_account = factory.account(second, account_id="200003")
        db.commit()
        scenario.store(scenario.client_account, scenario.client, [closed_trade(1, volume_lots=250)])
        scenario.store(second_account, second, [closed_trade(2, volume_lots=500)])

        cache = AnalyticsCache(ttl=60)
        aggregator = CommissionAggregator(db, cache=cache, clock=clock)
        aggregator.aggregate(scenario.partner.id)
        db.commit()

        rows = aggregator.per_user_breakdown(scenario.partner.id)
        assert [r["referred_user_id"] for r in rows] == [second.id, scenario.client.id]
        assert rows[0]["total_commission"] == Decimal("25.50")
        assert cache.get(("breakdown", scenario.partner.id)) is not None

        aggregator.aggregate(scenario.partner.id)
        assert cache.get(("breakdown", scenario.partner.id)) is None

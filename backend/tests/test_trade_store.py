"""
测试交易入库
"""
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import FIXED_NOW, closed_trade
from ib_portal.models import TradeRecord
from ib_portal.services.commission_rules import build_rule_map
from ib_portal.services.trade_store import (
    TradeContext,
    TradeStoreService,
    _parse_timestamp,
    extract_direction,
    extract_external_id,
    extract_volume_lots,
    is_closed_trade,
)

GROUP = "real\\Bbook\\Standard\\dynamic-2000x-20Pips"


@pytest.fixture
def rule_map():
    return build_rule_map([{"group_id": "standard", "usd_per_lot": 5, "spread_share_percent": 10}])


@pytest.fixture
def ctx(rule_map):
    return TradeContext(account_id="100001", user_id=7, partner_id=3, rule_map=rule_map, group_at_sync=GROUP)


@pytest.fixture
def store(db, clock):
    return TradeStoreService(db, clock=clock)


def _row_values(row):
    return (
        row.account_id, row.external_id, row.user_id, row.partner_id, row.symbol, row.direction,
        row.volume_lots, row.open_price, row.close_price, row.profit, row.close_time,
        row.group_id, row.commission, row.created_at, row.updated_at, row.synced_at,
    )


class TestFieldExtraction:

    def test_external_id_variants(self):
        assert extract_external_id({"DealId": 123}) == "123"
        assert extract_external_id({"OrderId": "A-9"}) == "A-9"
        assert extract_external_id({"dealid": 55}) == "55"

    def test_external_id_sentinels(self):
        assert extract_external_id({}) is None
        assert extract_external_id({"DealId": 0}) is None
        assert extract_external_id({"OrderId": "null"}) is None
        assert extract_external_id({"OrderId": ""}) is None

    def test_volume_lots_from_closed_endpoint(self):
        assert extract_volume_lots({"VolumeLots": 250}) == Decimal("2.5")

    def test_volume_from_legacy_endpoint(self):
        assert extract_volume_lots({"Volume": 1.5}) == Decimal("1.5")
        assert extract_volume_lots({"Volume": 0.002}) == Decimal("2")
        assert extract_volume_lots({}) == Decimal("0")

    def test_direction(self):
        assert extract_direction({"OrderType": "Buy"}) == "buy"
        assert extract_direction({"Type": 1}) == "sell"
        assert extract_direction({"Profit": -3}) == "sell"

    def test_closed_trade_definition(self):
        assert is_closed_trade({"Profit": 1.2})
        assert is_closed_trade({"ClosePrice": 1.1})
        assert is_closed_trade({"CloseTime": "2026-01-14T08:30:00Z"})
        assert not is_closed_trade({"Profit": 0, "OpenPrice": 1.1})

    def test_parse_timestamp(self):
        expected = datetime(2026, 1, 14, 8, 30)
        assert _parse_timestamp("2026-01-14T08:30:00Z") == expected
        assert _parse_timestamp(1768379400) == expected
        assert _parse_timestamp(1768379400000) == expected
        assert _parse_timestamp("1768379400000") == expected
        assert _parse_timestamp("not a date") is None
        assert _parse_timestamp(True) is None


class TestUpsertTrades:

    def test_stores_closed_trade_with_commission(self, db, store, ctx):
        result = store.upsert_trades([closed_trade(9001)], ctx)
        db.commit()

        assert result.stored == 1
        assert result.skipped_total == 0
        row = db.query(TradeRecord).one()
        assert row.account_id == "100001"
        assert row.external_id == "9001"
        assert row.volume_lots == Decimal("2.5")
        assert row.commission == Decimal("12.50")
        assert row.group_id == GROUP
        assert row.direction == "buy"
        assert row.close_time == datetime(2026, 1, 14, 8, 30)

    def test_idempotent_upsert(self, db, store, ctx):
        store.upsert_trades([closed_trade(9001)], ctx)
        db.commit()
        first = _row_values(db.query(TradeRecord).one())

        store.upsert_trades([closed_trade(9001)], ctx)
        db.commit()
        db.expire_all()

        rows = db.query(TradeRecord).all()
        assert len(rows) == 1
        assert _row_values(rows[0]) == first

    def test_resync_updates_mutable_fields_and_keeps_identity(self, db, session_factory, ctx):
        TradeStoreService(db, clock=lambda: FIXED_NOW).upsert_trades([closed_trade(9001)], ctx)
        db.commit()
        original = db.query(TradeRecord).one()
        original_id, created_at = original.id, original.created_at

        later = datetime(2026, 1, 15, 13, 0, 0)
        TradeStoreService(db, clock=lambda: later).upsert_trades(
            [closed_trade(9001, volume_lots=300, profit=20)], ctx
        )
        db.commit()
        db.expire_all()

        row = db.query(TradeRecord).one()
        assert row.id == original_id
        assert row.created_at == created_at
        assert row.volume_lots == Decimal("3")
        assert row.profit == Decimal("20.00")
        assert row.commission == Decimal("15.00")
        assert row.synced_at == later

    def test_resync_without_group_keeps_stored_group(self, db, store):
        rule_map = build_rule_map([
            {"group_id": "standard", "usd_per_lot": 5, "spread_share_percent": 10},
            {"group_id": "vip", "usd_per_lot": 8},
        ])
        with_group = TradeContext(account_id="100003", user_id=7, partner_id=3, rule_map=rule_map,
                                  group_at_sync=GROUP)
        store.upsert_trades([closed_trade(1)], with_group)
        db.commit()

        without_group = TradeContext(account_id="100003", user_id=7, partner_id=3, rule_map=rule_map,
                                     group_at_sync=None)
        result = store.upsert_trades([closed_trade(1), closed_trade(2)], without_group)
        db.commit()
        db.expire_all()

        kept = db.query(TradeRecord).filter(TradeRecord.external_id == "1").one()
        assert kept.group_id == GROUP
        assert kept.commission == Decimal("12.50")
        # 新交易没有可沿用的交易组
        fresh = db.query(TradeRecord).filter(TradeRecord.external_id == "2").one()
        assert fresh.group_id is None
        assert fresh.commission == Decimal("0.00")
        assert result.unattributed == 1

    def test_skip_reasons(self, db, store, ctx):
        trades = [
            {"Symbol": "EURUSD", "VolumeLots": 100, "Profit": 1},             # no_id
            {"DealId": 0, "Symbol": "EURUSD", "VolumeLots": 100, "Profit": 1},  # no_id (sentinel)
            {"DealId": 2, "VolumeLots": 100, "Profit": 1},                     # no_symbol
            {"DealId": 3, "Symbol": "EURUSD", "VolumeLots": 100, "Profit": 0, "OpenPrice": 1.1},  # not_closed
            {"DealId": 4, "Symbol": "EURUSD", "VolumeLots": 0, "Profit": 1},   # no_volume
            "garbage",                                                         # error
            closed_trade(5),
        ]
        result = store.upsert_trades(trades, ctx)
        db.commit()

        assert result.received == 7
        assert result.stored == 1
        assert result.skipped == {"no_id": 2, "no_symbol": 1, "not_closed": 1, "no_volume": 1, "error": 1}
        assert db.query(TradeRecord).count() == 1

    def test_duplicate_in_batch_keeps_last(self, db, store, ctx):
        result = store.upsert_trades([closed_trade(7, profit=1), closed_trade(7, profit=2)], ctx)
        db.commit()

        assert result.stored == 1
        assert db.query(TradeRecord).one().profit == Decimal("2.00")

    def test_unattributed_trade_stored_with_zero_commission(self, db, store):
        rule_map = build_rule_map([
            {"group_id": "vip", "usd_per_lot": 5},
            {"group_id": "gold", "usd_per_lot": 3},
        ])
        ctx = TradeContext(account_id="100002", user_id=8, partner_id=3, rule_map=rule_map,
                           group_at_sync="real/zzz/nomatch")
        result = store.upsert_trades([closed_trade(11)], ctx)
        db.commit()

        assert result.stored == 1
        assert result.unattributed == 1
        assert db.query(TradeRecord).one().commission == Decimal("0.00")

    def test_legacy_trade_payload(self, db, store, ctx):
        legacy = {
            "OrderId": 77,
            "Symbol": "XAUUSD",
            "Type": "Sell",
            "Volume": 0.5,
            "OpenPrice": 2010.5,
            "ClosePrice": 0,
            "Profit": -15.25,
        }
        store.upsert_trades([legacy], ctx)
        db.commit()

        row = db.query(TradeRecord).one()
        assert row.external_id == "77"
        assert row.direction == "sell"
        assert row.volume_lots == Decimal("0.5")
        # 没有平仓价时取开仓价
        assert row.close_price == Decimal("2010.5")
        assert row.close_time is None


class TestReadSide:

    def test_list_trades_and_stats(self, db, store, ctx):
        store.upsert_trades([closed_trade(1), closed_trade(2, volume_lots=100, profit=-4)], ctx)
        other = TradeContext(account_id="100009", user_id=7, partner_id=3, rule_map=ctx.rule_map,
                             group_at_sync=GROUP)
        store.upsert_trades([closed_trade(3, volume_lots=50)], other)
        db.commit()

        page = store.list_trades(user_id=7, limit=2)
        assert page["total"] == 3
        assert len(page["items"]) == 2
        assert store.list_trades(account_id="100009")["total"] == 1
        assert store.list_trades(user_id=999)["total"] == 0

        stats = {row["account_id"]: row for row in store.account_stats(7)}
        assert stats["100001"]["trade_count"] == 2
        assert stats["100001"]["total_volume"] == Decimal("3.5")
        assert stats["100001"]["total_commission"] == Decimal("17.5")
        assert stats["100009"]["trade_count"] == 1

        assert store.last_sync_time("100001") == FIXED_NOW
        assert store.last_sync_time("nope") is None

"""
测试推荐关系与组分配的写入
"""
from decimal import Decimal

from ib_portal.models import (
    GroupAssignment,
    ReferralEdge,
    ReferralHistory,
    assign_referral,
    deactivate_referral,
    replace_group_assignments,
)
from ib_portal.models.referral import EDGE_ACTIVE, EDGE_INACTIVE, get_active_edge


class TestAssignReferral:

    def test_first_link_creates_edge_and_history(self, db, factory):
        user = factory.user()
        partner = factory.partner()

        edge = assign_referral(db, user.id, partner.id, moved_by="admin")
        db.commit()

        assert edge.status == EDGE_ACTIVE
        history = db.query(ReferralHistory).all()
        assert [(h.action, h.from_partner_id, h.to_partner_id) for h in history] == [
            ("created", None, partner.id),
        ]

    def test_move_keeps_single_active_edge(self, db, factory):
        user = factory.user()
        first = factory.partner()
        second = factory.partner()

        old_edge = assign_referral(db, user.id, first.id)
        new_edge = assign_referral(db, user.id, second.id, moved_by="admin", notes="transfer")
        db.commit()

        assert old_edge.status == EDGE_INACTIVE
        assert get_active_edge(db, user.id).id == new_edge.id
        active = db.query(ReferralEdge).filter(
            ReferralEdge.user_id == user.id,
            ReferralEdge.status == EDGE_ACTIVE,
        ).count()
        assert active == 1
        # 旧关系保留，不删除
        assert db.query(ReferralEdge).count() == 2

        actions = [h.action for h in db.query(ReferralHistory).order_by(ReferralHistory.id)]
        assert actions == ["created", "moved", "created"]
        moved = db.query(ReferralHistory).filter(ReferralHistory.action == "moved").one()
        assert moved.from_partner_id == first.id
        assert moved.to_partner_id == second.id
        assert moved.notes == "transfer"

    def test_same_partner_is_noop(self, db, factory):
        user = factory.user()
        partner = factory.partner()
        edge = assign_referral(db, user.id, partner.id)
        again = assign_referral(db, user.id, partner.id)
        db.commit()

        assert again.id == edge.id
        assert db.query(ReferralHistory).count() == 1

    def test_deactivate(self, db, factory):
        user = factory.user()
        partner = factory.partner()
        assign_referral(db, user.id, partner.id)

        assert deactivate_referral(db, user.id, moved_by="admin") is True
        assert get_active_edge(db, user.id) is None
        assert deactivate_referral(db, user.id) is False
        assert db.query(ReferralHistory).filter(ReferralHistory.action == "deactivated").count() == 1


class TestReplaceGroupAssignments:

    def test_replaces_wholesale(self, db, factory):
        partner = factory.partner()
        factory.assignment(partner, "old", usd_per_lot=1, spread_share_percent=1)

        created = replace_group_assignments(db, partner.id, [
            {"group_id": "real\\Bbook\\Standard", "group_name": "Standard", "usd_per_lot": 5,
             "spread_share_percent": 10},
            {"group_id": "  "},
            {"group_id": "real\\Bbook\\VIP", "usd_per_lot": "7.5"},
        ])
        db.commit()

        assert len(created) == 2
        rows = db.query(GroupAssignment).filter(GroupAssignment.partner_id == partner.id).order_by(
            GroupAssignment.id
        ).all()
        assert [r.group_id for r in rows] == ["real\\Bbook\\Standard", "real\\Bbook\\VIP"]
        assert rows[1].usd_per_lot == Decimal("7.5")
        assert rows[1].spread_share_percent == Decimal("0")

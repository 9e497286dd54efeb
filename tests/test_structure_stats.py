# tests/test_structure_stats.py
"""
Tests for per-level structure statistics.

Run:
    pytest tests/test_structure_stats.py -v
"""
from datetime import timedelta

from mlm_system import api
from mlm_system.config.structures import StructureType
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.structure_stats_service import StructureStatsService
from tests.conftest import NOW, BASE


def by_level(rows):
    return {row["level"]: row for row in rows}


class TestSubscriptionStructure:

    def test_levels(self, session, network):
        root = network.member()
        children = network.referrals(root, 3)
        service = CommissionService(session)
        for child in children[:2]:
            service.recordSubscriptionPayment(child.memberID, 45000, NOW)

        rows = api.commission_structure_stats(root.memberID, session=session)

        assert [row["level"] for row in rows] == [1, 2, 3, 4, 5]
        levels = by_level(rows)
        assert levels[1]["percent"] == "10.00"
        assert levels[1]["earned"] == 9000
        assert levels[1]["volume"] == 90000
        assert levels[1]["partners_count"] == 3
        assert levels[1]["status"] == "active"
        assert levels[1]["unlock_requirement"] is None
        assert levels[2]["status"] == "active"
        assert levels[2]["unlock_requirement"] == "3 direct referrals"
        assert levels[3]["status"] == "locked"
        assert levels[3]["unlock_requirement"] == "5 direct referrals"

    def test_lapsed_member_sees_frozen(self, session, network):
        root = network.member(subscribed=False)
        network.subscribe(root, start=BASE - timedelta(days=90), days=30)
        child = network.member(sponsor=root, subscribed=False)
        CommissionService(session).recordSubscriptionPayment(child.memberID, 45000, NOW)

        level = by_level(StructureStatsService(session).commissionStructureStats(root.memberID))[1]

        assert level["status"] == "frozen"
        assert level["earned"] == 0
        assert level["frozen"] == 4500

    def test_period_filter(self, session, network):
        root = network.member()
        child = network.member(sponsor=root, subscribed=False)
        CommissionService(session).recordSubscriptionPayment(child.memberID, 45000, NOW)

        rows = StructureStatsService(session).commissionStructureStats(
            root.memberID, start=NOW + timedelta(days=1)
        )

        assert by_level(rows)[1]["earned"] == 0
        assert by_level(rows)[1]["volume"] == 0


class TestPurchaseStructure:

    def test_activation_gates_deeper_levels(self, session, network):
        root = network.member()
        child = network.member(sponsor=root)
        service = CommissionService(session)
        service.recordOrder(child.memberID, 10000, NOW - timedelta(hours=2))
        stats = StructureStatsService(session)

        levels = by_level(stats.commissionStructureStats(root.memberID, StructureType.PURCHASE))

        assert len(levels) == 10
        assert levels[1]["status"] == "active"
        assert levels[1]["earned"] == 1000
        assert levels[2]["status"] == "frozen"
        assert levels[2]["unlock_requirement"] == "20000 KZT monthly activation"

        service.recordOrder(root.memberID, 20000, NOW - timedelta(hours=1))
        levels = by_level(stats.commissionStructureStats(root.memberID, StructureType.PURCHASE))

        assert levels[2]["status"] == "active"

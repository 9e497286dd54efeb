# tests/test_commission_service.py
"""
Tests for commission calculation and ledger writes.

Run:
    pytest tests/test_commission_service.py -v
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from models import CommissionEntry, NoCommissionRecord, SourceEvent, EntryStatus
from mlm_system.config.structures import StructureType
from mlm_system.errors import ValidationError
from mlm_system.services.commission_service import CommissionService, round_kzt
from mlm_system.services.rule_service import RuleService
from tests.conftest import NOW, BASE


def entries_of(session, event_id):
    return session.query(CommissionEntry).filter_by(
        sourceEventID=event_id
    ).order_by(CommissionEntry.level).all()


def reasons_of(session, event_id):
    return {
        r.level: r.reason
        for r in session.query(NoCommissionRecord).filter_by(sourceEventID=event_id)
    }


# =============================================================================
# TEST CLASS: Structure 1 distribution
# =============================================================================

class TestSubscriptionCommissions:
    """Subscription payments pay 10% to each of up to five unlocked ancestors."""

    def test_full_chain_pays_each_level(self, session, network):
        ancestors, payer = network.chain(5)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        assert result["success"] is True
        assert result["totalDistributed"] == 22500
        entries = entries_of(session, result["event"])
        assert [e.level for e in entries] == [1, 2, 3, 4, 5]
        assert [e.recipientID for e in entries] == [a.memberID for a in ancestors]
        assert all(e.amount == 4500 for e in entries)
        assert all(e.status == EntryStatus.PENDING.value for e in entries)

    def test_single_sponsor(self, session, network):
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        entries = entries_of(session, result["event"])
        assert len(entries) == 1
        assert entries[0].recipientID == sponsor.memberID
        assert entries[0].amount == 4500

    def test_payment_extends_subscription(self, session, network):
        payer = network.member()
        service = CommissionService(session)

        service.recordSubscriptionPayment(payer.memberID, 45000, NOW)

        assert service.subscriptions.isSubscribedAt(payer.memberID, NOW + timedelta(days=40))

    def test_no_upline_no_entries(self, session, network):
        payer = network.member()

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        assert result["commissions"] == []
        assert result["noCommission"] == []

    def test_locked_level_is_skipped_with_reason(self, session, network):
        ancestors, payer = network.chain(3, unlock=False)
        # L3 is unlocked (5 directs), L2 only has 2 directs
        network.referrals(ancestors[2], 4)
        network.referrals(ancestors[1], 1)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        entries = entries_of(session, result["event"])
        assert [e.level for e in entries] == [1, 3]
        assert reasons_of(session, result["event"]) == {2: "level_2_locked"}

    def test_lapsed_ancestor_gets_frozen_entry(self, session, network):
        sponsor = network.member(subscribed=False)
        network.subscribe(sponsor, start=BASE - timedelta(days=90), days=30)
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        entry = entries_of(session, result["event"])[0]
        assert entry.status == EntryStatus.FROZEN.value
        assert entry.frozenUntil is None
        assert entry.amount == 4500

    def test_never_subscribed_ancestor_is_inactive(self, session, network):
        sponsor = network.member(subscribed=False)
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        assert entries_of(session, result["event"]) == []
        assert reasons_of(session, result["event"]) == {1: "sponsor_inactive"}

    def test_unsubscribed_payer_pays_nobody(self, session, network):
        ancestors, payer = network.chain(2)
        event = network.event(payer, 45000)

        result = CommissionService(session).processEvent(event.eventID)

        assert result["commissions"] == []
        assert set(reasons_of(session, event.eventID).values()) == {"subscription_not_active"}

    def test_marketing_free_member_generates_nothing(self, session, network):
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, free=True, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        assert entries_of(session, result["event"]) == []
        assert reasons_of(session, result["event"]) == {1: "marketing_free_access"}

    def test_freeze_days_hold_new_entries(self, session, network):
        Config.set(Config.COMMISSION_FREEZE_DAYS, 14)
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45000, NOW)

        entry = entries_of(session, result["event"])[0]
        assert entry.status == EntryStatus.FROZEN.value
        assert entry.frozenUntil == NOW + timedelta(days=14)


# =============================================================================
# TEST CLASS: Idempotency
# =============================================================================

class TestIdempotency:
    """Reprocessing an event never pays twice."""

    def test_process_event_twice(self, session, network):
        ancestors, payer = network.chain(5)
        service = CommissionService(session)
        first = service.recordSubscriptionPayment(payer.memberID, 45000, NOW)

        second = service.processEvent(first["event"])

        assert second["commissions"] == []
        assert len(second["skipped"]) == 5
        assert second["totalDistributed"] == 0
        assert len(entries_of(session, first["event"])) == 5

    def test_duplicate_external_ref_reuses_event(self, session, network):
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, subscribed=False)
        service = CommissionService(session)

        service.recordSubscriptionPayment(payer.memberID, 45000, NOW, externalRef="pay-1")
        service.recordSubscriptionPayment(payer.memberID, 45000, NOW, externalRef="pay-1")

        assert session.query(SourceEvent).count() == 1
        assert session.query(CommissionEntry).count() == 1

    def test_skip_records_written_once(self, session, network):
        sponsor = network.member(subscribed=False)
        payer = network.member(sponsor=sponsor, subscribed=False)
        service = CommissionService(session)
        result = service.recordSubscriptionPayment(payer.memberID, 45000, NOW)

        service.processEvent(result["event"])

        assert session.query(NoCommissionRecord).count() == 1


# =============================================================================
# TEST CLASS: Amounts
# =============================================================================

class TestAmounts:
    """Whole-tenge rounding and the per-event cap."""

    def test_round_half_up(self):
        assert round_kzt(Decimal("4500.5")) == 4501
        assert round_kzt(Decimal("4500.49")) == 4500

    def test_odd_amount_rounds_half_up(self, session, network):
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 45005, NOW)

        assert entries_of(session, result["event"])[0].amount == 4501

    def test_total_never_exceeds_event_amount(self, session, network):
        rules = RuleService(session)
        rules.addRuleVersion(StructureType.SUBSCRIPTION, 1, 60, BASE)
        rules.addRuleVersion(StructureType.SUBSCRIPTION, 2, 60, BASE)
        session.commit()
        ancestors, payer = network.chain(2)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 1000, NOW)

        amounts = [e.amount for e in entries_of(session, result["event"])]
        assert amounts == [600, 400]
        assert sum(amounts) <= 1000

    def test_level_after_cap_records_reason(self, session, network):
        rules = RuleService(session)
        rules.addRuleVersion(StructureType.SUBSCRIPTION, 1, 60, BASE)
        rules.addRuleVersion(StructureType.SUBSCRIPTION, 2, 60, BASE)
        session.commit()
        ancestors, payer = network.chain(3)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 1000, NOW)

        assert [e.amount for e in entries_of(session, result["event"])] == [600, 400]
        assert reasons_of(session, result["event"]) == {3: "amount_exhausted"}

    def test_rule_version_at_event_time(self, session, network):
        RuleService(session).addRuleVersion(StructureType.SUBSCRIPTION, 1, 20, NOW + timedelta(days=1))
        session.commit()
        sponsor = network.member()
        payer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordSubscriptionPayment(payer.memberID, 10000, NOW)

        assert entries_of(session, result["event"])[0].amount == 1000

    @pytest.mark.parametrize("amount", [0, -100, 10.5, True])
    def test_invalid_amount_rejected(self, session, network, amount):
        payer = network.member()

        with pytest.raises(ValidationError) as exc:
            CommissionService(session).recordSubscriptionPayment(payer.memberID, amount, NOW)

        assert exc.value.code == "INVALID_AMOUNT"

    def test_unknown_member_rejected(self, session):
        with pytest.raises(ValidationError) as exc:
            CommissionService(session).recordOrder(999, 1000, NOW)

        assert exc.value.code == "MEMBER_NOT_FOUND"


# =============================================================================
# TEST CLASS: Structure 2 distribution
# =============================================================================

class TestOrderCommissions:
    """Orders pay up to ten levels; levels 2+ need monthly activation."""

    def test_level_one_always_pays(self, session, network):
        sponsor = network.member(subscribed=False)
        buyer = network.member(sponsor=sponsor, subscribed=False)

        result = CommissionService(session).recordOrder(buyer.memberID, 10000, NOW)

        entries = entries_of(session, result["event"])
        assert [(e.recipientID, e.amount) for e in entries] == [(sponsor.memberID, 1000)]

    def test_deeper_level_needs_activation(self, session, network):
        top = network.member(subscribed=False)
        middle = network.member(sponsor=top, subscribed=False)
        buyer = network.member(sponsor=middle, subscribed=False)
        service = CommissionService(session)

        result = service.recordOrder(buyer.memberID, 10000, NOW)

        assert [e.level for e in entries_of(session, result["event"])] == [1]
        assert reasons_of(session, result["event"]) == {2: "sponsor_inactive"}

    def test_activated_ancestor_paid(self, session, network):
        top = network.member(subscribed=False)
        middle = network.member(sponsor=top, subscribed=False)
        buyer = network.member(sponsor=middle, subscribed=False)
        service = CommissionService(session)
        service.recordOrder(top.memberID, 20000, NOW - timedelta(hours=1))

        result = service.recordOrder(buyer.memberID, 10000, NOW)

        entries = entries_of(session, result["event"])
        assert [(e.level, e.amount) for e in entries] == [(1, 1000), (2, 500)]

    def test_activation_from_previous_month_does_not_count(self, session, network):
        top = network.member(subscribed=False)
        middle = network.member(sponsor=top, subscribed=False)
        buyer = network.member(sponsor=middle, subscribed=False)
        service = CommissionService(session)
        service.recordOrder(top.memberID, 20000, NOW.replace(day=1) - timedelta(days=1))

        result = service.recordOrder(buyer.memberID, 10000, NOW)

        assert [e.level for e in entries_of(session, result["event"])] == [1]

    def test_structures_are_separate(self, session, network):
        s1_sponsor = network.member()
        s2_sponsor = network.member()
        buyer = network.member(subscribed=False, structures=())
        network.bind(buyer, s1_sponsor, StructureType.SUBSCRIPTION)
        network.bind(buyer, s2_sponsor, StructureType.PURCHASE)
        session.commit()

        result = CommissionService(session).recordOrder(buyer.memberID, 10000, NOW)

        assert [e.recipientID for e in entries_of(session, result["event"])] == [s2_sponsor.memberID]

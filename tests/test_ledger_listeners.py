# tests/test_ledger_listeners.py
"""
Tests for Ledger Event Listeners.

CommissionEntry and BalanceAdjustment are append-only:

    CommissionEntry UPDATE amount/keys  → LEDGER_IMMUTABLE
    CommissionEntry UPDATE status       → only along ALLOWED_TRANSITIONS
    CommissionEntry DELETE              → LEDGER_APPEND_ONLY
    BalanceAdjustment UPDATE/DELETE     → LEDGER_APPEND_ONLY

Run:
    pytest tests/test_ledger_listeners.py -v
"""
import pytest

from models import BalanceAdjustment, CommissionEntry
from models.listeners import register_all_listeners
from mlm_system.errors import IntegrityViolation
from mlm_system.services.balance_service import BalanceService


@pytest.fixture
def entry(network):
    sponsor, payer = network.pair()
    return network.entry(network.event(payer, 45000), sponsor, 4500)


# =============================================================================
# TEST CLASS: CommissionEntry UPDATE
# =============================================================================

class TestEntryUpdate:

    def test_amount_is_immutable(self, session, entry):
        entry.amount = 9000

        with pytest.raises(IntegrityViolation) as exc:
            session.commit()

        assert exc.value.code == "LEDGER_IMMUTABLE"
        session.rollback()
        assert session.get(CommissionEntry, entry.entryID).amount == 4500

    def test_recipient_is_immutable(self, session, network, entry):
        other = network.member()
        entry.recipientID = other.memberID

        with pytest.raises(IntegrityViolation) as exc:
            session.commit()

        assert exc.value.code == "LEDGER_IMMUTABLE"
        session.rollback()

    def test_allowed_transitions(self, session, entry):
        entry.status = "processing"
        session.commit()
        entry.status = "completed"
        session.commit()

        assert session.get(CommissionEntry, entry.entryID).status == "completed"

    def test_completed_is_final(self, session, entry):
        entry.status = "completed"
        session.commit()

        entry.status = "pending"
        with pytest.raises(IntegrityViolation) as exc:
            session.commit()

        assert exc.value.code == "ILLEGAL_TRANSITION"
        session.rollback()

    def test_failed_entry_stays_failed_after_commit(self, session, network):
        sponsor, payer = network.pair()
        failed = network.entry(network.event(payer, 45000), sponsor, 4500, status="failed")

        # Committed instance is expired, so the old status is not loaded
        failed.status = "completed"
        with pytest.raises(IntegrityViolation) as exc:
            session.commit()

        assert exc.value.code == "ILLEGAL_TRANSITION"
        session.rollback()
        assert session.get(CommissionEntry, failed.entryID).status == "failed"

    def test_frozen_to_pending(self, session, network):
        sponsor, payer = network.pair()
        frozen = network.entry(network.event(payer, 45000), sponsor, 4500, status="frozen")

        frozen.status = "pending"
        session.commit()

        assert frozen.status == "pending"


# =============================================================================
# TEST CLASS: DELETE
# =============================================================================

class TestDelete:

    def test_entry_delete_blocked(self, session, entry):
        session.delete(entry)

        with pytest.raises(IntegrityViolation) as exc:
            session.commit()

        assert exc.value.code == "LEDGER_APPEND_ONLY"
        session.rollback()
        assert session.query(CommissionEntry).count() == 1

    def test_adjustment_update_and_delete_blocked(self, session, network, admin):
        member = network.member()
        adjustment = BalanceService(session).adjustBalance(admin.memberID, member.memberID, 500, "bonus")

        adjustment.amount = 5000
        with pytest.raises(IntegrityViolation):
            session.commit()
        session.rollback()

        session.delete(session.get(BalanceAdjustment, adjustment.adjustmentID))
        with pytest.raises(IntegrityViolation):
            session.commit()
        session.rollback()

        assert session.query(BalanceAdjustment).one().amount == 500


class TestRegistration:

    def test_register_twice_is_safe(self, session, entry):
        register_all_listeners()
        entry.status = "completed"
        session.commit()

        assert entry.status == "completed"

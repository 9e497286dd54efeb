# tests/test_balance.py
"""
Tests for ledger-derived balances, withdrawals and manual adjustments.

Run:
    pytest tests/test_balance.py -v
"""
import pytest

from config import Config
from mlm_system import api
from mlm_system.errors import InsufficientBalance, Unauthorized, ValidationError
from mlm_system.services.balance_service import BalanceService


@pytest.fixture
def earner(network):
    """Member with 20000 completed, 3000 frozen and 1500 pending."""
    sponsor, payer = network.pair()
    event = network.event(payer, 200000)
    network.entry(event, sponsor, 20000, status="completed")
    network.entry(network.event(payer, 30000), sponsor, 3000, status="frozen")
    network.entry(network.event(payer, 15000), sponsor, 1500, status="pending")
    return sponsor


class TestBalances:

    def test_buckets(self, session, earner):
        balance = BalanceService(session).getUserBalance(earner.memberID)

        assert balance == {"available": 20000, "frozen": 3000, "pending": 1500, "withdrawn": 0}

    def test_reversal_reduces_bucket(self, session, network, earner):
        event = network.event(earner, 1000)
        first = network.entry(event, earner, 500, status="completed")
        network.entry(event, earner, -200, kind="reversal", status=first.status)

        assert BalanceService(session).getUserBalance(earner.memberID)["available"] == 20300

    def test_member_without_history(self, session, network):
        member = network.member()

        assert api.get_user_balance(member.memberID, session=session) == {
            "available": 0, "frozen": 0, "pending": 0, "withdrawn": 0
        }

    def test_all_balances_for_admin(self, session, earner, admin):
        rows = api.get_all_user_balances(admin.memberID, session=session)

        assert [row["user_id"] for row in rows] == [earner.memberID]
        assert rows[0]["available"] == 20000

    def test_all_balances_requires_admin(self, session, earner):
        with pytest.raises(Unauthorized):
            BalanceService(session).getAllUserBalances(earner.memberID)


class TestWithdrawals:

    def test_reserves_amount_and_fee(self, session, earner):
        Config.set(Config.WITHDRAWAL_FEE_PERCENT, 3)
        service = BalanceService(session)

        withdrawal = service.createWithdrawal(earner.memberID, 10050, "card")

        assert withdrawal.fee == 302
        assert withdrawal.status == "pending"
        assert service.getUserBalance(earner.memberID)["available"] == 20000 - 10050 - 302

    @pytest.mark.parametrize("amount", [0, -10, 7500.5])
    def test_invalid_amount(self, session, earner, amount):
        with pytest.raises(ValidationError) as exc:
            BalanceService(session).createWithdrawal(earner.memberID, amount)

        assert exc.value.code == "INVALID_AMOUNT"

    def test_below_minimum(self, session, earner):
        result = api.create_withdrawal(earner.memberID, 100, session=session)

        assert result == {"success": False, "error": "BELOW_MINIMUM", "minimum": 5000}

    def test_insufficient_balance(self, session, earner):
        with pytest.raises(InsufficientBalance):
            BalanceService(session).createWithdrawal(earner.memberID, 25000)

    def test_frozen_and_pending_not_withdrawable(self, session, earner):
        with pytest.raises(InsufficientBalance):
            BalanceService(session).createWithdrawal(earner.memberID, 20001)

    def test_second_withdrawal_sees_reservation(self, session, earner):
        service = BalanceService(session)
        service.createWithdrawal(earner.memberID, 15000)

        result = api.create_withdrawal(earner.memberID, 6000, session=session)

        assert result["success"] is False
        assert result["error"] == "INSUFFICIENT_BALANCE"
        assert result["available"] == 5000

    def test_cancel_releases_funds(self, session, earner, admin):
        service = BalanceService(session)
        withdrawal = service.createWithdrawal(earner.memberID, 15000)

        service.updateWithdrawalStatus(admin.memberID, withdrawal.withdrawalID, "cancelled")

        assert service.getUserBalance(earner.memberID)["available"] == 20000
        assert withdrawal.processedBy == admin.memberID

    def test_completed_counts_as_withdrawn(self, session, earner, admin):
        service = BalanceService(session)
        withdrawal = service.createWithdrawal(earner.memberID, 15000)

        result = api.update_withdrawal_status(
            admin.memberID, withdrawal.withdrawalID, "completed", session=session
        )

        assert result["status"] == "completed"
        balance = service.getUserBalance(earner.memberID)
        assert balance["withdrawn"] == 15000
        assert balance["available"] == 5000

    def test_illegal_transition(self, session, earner, admin):
        service = BalanceService(session)
        withdrawal = service.createWithdrawal(earner.memberID, 15000)
        service.updateWithdrawalStatus(admin.memberID, withdrawal.withdrawalID, "completed")

        with pytest.raises(ValidationError) as exc:
            service.updateWithdrawalStatus(admin.memberID, withdrawal.withdrawalID, "pending")

        assert exc.value.code == "ILLEGAL_TRANSITION"

    def test_unknown_withdrawal(self, session, admin):
        result = api.update_withdrawal_status(admin.memberID, 404, "completed", session=session)

        assert result == {"success": False, "error": "WITHDRAWAL_NOT_FOUND"}


class TestAdjustments:

    def test_adjustment_changes_available(self, session, earner, admin):
        service = BalanceService(session)

        service.adjustBalance(admin.memberID, earner.memberID, -2500, "duplicate payout")

        assert service.getUserBalance(earner.memberID)["available"] == 17500

    def test_requires_admin(self, session, earner):
        result = api.adjust_balance(earner.memberID, earner.memberID, 1000, "bonus", session=session)

        assert result == {"success": False, "error": "UNAUTHORIZED"}

    @pytest.mark.parametrize("amount,reason,code", [
        (0, "zero", "INVALID_AMOUNT"),
        (100, "   ", "REASON_REQUIRED"),
    ])
    def test_validation(self, session, earner, admin, amount, reason, code):
        with pytest.raises(ValidationError) as exc:
            BalanceService(session).adjustBalance(admin.memberID, earner.memberID, amount, reason)

        assert exc.value.code == code

    def test_unknown_member(self, session, admin):
        with pytest.raises(ValidationError) as exc:
            BalanceService(session).adjustBalance(admin.memberID, 404, 100, "manual")

        assert exc.value.code == "MEMBER_NOT_FOUND"

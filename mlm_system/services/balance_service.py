# mlm_system/services/balance_service.py
"""
Balance service - balances derived from the ledger on every call.

No balance is stored. A member's buckets are:
    available = completed entries + adjustments
                - reserving withdrawals - their fees
    frozen    = frozen entries
    pending   = pending + processing entries
    withdrawn = completed withdrawals
"""
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import func
import logging

from config import Config
from models.member import Member
from models.commission_entry import CommissionEntry, EntryStatus
from models.withdrawal import Withdrawal, WithdrawalStatus, RESERVING_STATUSES
from models.balance_adjustment import BalanceAdjustment
from mlm_system.errors import ValidationError, InsufficientBalance
from mlm_system.services.commission_service import round_kzt
from mlm_system.utils.permissions import require_admin
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING.value: {
        WithdrawalStatus.PROCESSING.value,
        WithdrawalStatus.COMPLETED.value,
        WithdrawalStatus.FAILED.value,
        WithdrawalStatus.CANCELLED.value,
    },
    WithdrawalStatus.PROCESSING.value: {
        WithdrawalStatus.COMPLETED.value,
        WithdrawalStatus.FAILED.value,
    },
}


class BalanceService:
    """Service for balances, withdrawals and manual adjustments."""

    def __init__(self, session: Session):
        self.session = session

    # ============================================================
    # BALANCES
    # ============================================================

    def getUserBalance(self, userId: int) -> Dict[str, int]:
        entries = dict(self.session.query(
            CommissionEntry.status,
            func.coalesce(func.sum(CommissionEntry.amount), 0)
        ).filter(
            CommissionEntry.recipientID == userId
        ).group_by(CommissionEntry.status).all())

        adjustments = self.session.query(
            func.coalesce(func.sum(BalanceAdjustment.amount), 0)
        ).filter(BalanceAdjustment.memberID == userId).scalar()

        withdrawals = dict(
            (status, (int(amount), int(fee)))
            for status, amount, fee in self.session.query(
                Withdrawal.status,
                func.coalesce(func.sum(Withdrawal.amount), 0),
                func.coalesce(func.sum(Withdrawal.fee), 0)
            ).filter(
                Withdrawal.memberID == userId
            ).group_by(Withdrawal.status).all()
        )

        reserved = sum(
            amount + fee
            for status, (amount, fee) in withdrawals.items()
            if status in RESERVING_STATUSES
        )

        return {
            "available": int(entries.get(EntryStatus.COMPLETED.value, 0)) + int(adjustments or 0) - reserved,
            "frozen": int(entries.get(EntryStatus.FROZEN.value, 0)),
            "pending": (
                int(entries.get(EntryStatus.PENDING.value, 0))
                + int(entries.get(EntryStatus.PROCESSING.value, 0))
            ),
            "withdrawn": withdrawals.get(WithdrawalStatus.COMPLETED.value, (0, 0))[0],
        }

    def getAllUserBalances(self, adminId: int) -> List[Dict]:
        """
        Balances of every member with ledger, adjustment or withdrawal history.

        Raises:
            Unauthorized: adminId is not an admin
        """
        require_admin(self.session, adminId)

        memberIds = set(row[0] for row in self.session.query(CommissionEntry.recipientID).distinct())
        memberIds.update(row[0] for row in self.session.query(BalanceAdjustment.memberID).distinct())
        memberIds.update(row[0] for row in self.session.query(Withdrawal.memberID).distinct())

        rows = []
        for memberId in sorted(memberIds):
            member = self.session.get(Member, memberId)
            balance = self.getUserBalance(memberId)
            rows.append({
                "user_id": memberId,
                "full_name": member.fullName if member else None,
                "email": member.email if member else None,
                **balance,
            })

        rows.sort(key=lambda r: (-r["available"], r["user_id"]))
        return rows

    # ============================================================
    # WITHDRAWALS
    # ============================================================

    @staticmethod
    def calculateFee(amount: int) -> int:
        percent = Decimal(str(Config.get(Config.WITHDRAWAL_FEE_PERCENT) or 0))
        return round_kzt(Decimal(amount) * percent / Decimal("100"))

    def createWithdrawal(self, userId: int, amount: int, method: Optional[str] = None) -> Withdrawal:
        """
        Reserve a withdrawal against the available balance.

        The balance is checked again after the row is flushed, so a second
        withdrawal racing inside the same database transaction window
        cannot overdraw.

        Raises:
            ValidationError: INVALID_AMOUNT, BELOW_MINIMUM
            InsufficientBalance: amount + fee exceeds available
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Invalid withdrawal amount {amount!r}", code="INVALID_AMOUNT")

        minimum = int(Config.get(Config.MIN_WITHDRAWAL_KZT) or 0)
        if amount < minimum:
            raise ValidationError(
                f"Withdrawal {amount} below minimum {minimum}",
                code="BELOW_MINIMUM",
                minimum=minimum
            )

        fee = self.calculateFee(amount)
        available = self.getUserBalance(userId)["available"]
        if amount + fee > available:
            raise InsufficientBalance(
                f"Member {userId} requested {amount}+{fee}, available {available}",
                available=available
            )

        withdrawal = Withdrawal(
            memberID=userId,
            amount=amount,
            fee=fee,
            method=method,
            status=WithdrawalStatus.PENDING.value
        )
        self.session.add(withdrawal)
        self.session.flush()

        if self.getUserBalance(userId)["available"] < 0:
            self.session.rollback()
            raise InsufficientBalance(f"Member {userId} balance changed during withdrawal")

        self.session.commit()
        logger.info(
            f"Withdrawal {withdrawal.withdrawalID} created for member {userId}: "
            f"{amount} (fee {fee}, method {method})"
        )
        return withdrawal

    def updateWithdrawalStatus(self, adminId: int, withdrawalId: int, status: str) -> Withdrawal:
        """
        Move a withdrawal along its lifecycle. Failed and cancelled
        withdrawals stop reserving funds.

        Raises:
            Unauthorized: adminId is not an admin
            ValidationError: WITHDRAWAL_NOT_FOUND, ILLEGAL_TRANSITION
        """
        require_admin(self.session, adminId)

        withdrawal = self.session.get(Withdrawal, withdrawalId)
        if withdrawal is None:
            raise ValidationError(f"Withdrawal {withdrawalId} not found", code="WITHDRAWAL_NOT_FOUND")

        allowed = WITHDRAWAL_TRANSITIONS.get(withdrawal.status, set())
        if status not in allowed:
            raise ValidationError(
                f"Withdrawal {withdrawalId}: {withdrawal.status} -> {status} not allowed",
                code="ILLEGAL_TRANSITION"
            )

        oldStatus = withdrawal.status
        withdrawal.status = status
        withdrawal.processedAt = timeMachine.now
        withdrawal.processedBy = adminId
        self.session.commit()

        logger.info(f"Withdrawal {withdrawalId}: {oldStatus} -> {status} by admin {adminId}")
        return withdrawal

    # ============================================================
    # ADJUSTMENTS
    # ============================================================

    def adjustBalance(self, adminId: int, userId: int, amount: int, reason: str) -> BalanceAdjustment:
        """
        Append a signed manual adjustment.

        Raises:
            Unauthorized: adminId is not an admin
            ValidationError: INVALID_AMOUNT, REASON_REQUIRED, MEMBER_NOT_FOUND
        """
        require_admin(self.session, adminId)

        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError(f"Invalid adjustment amount {amount!r}", code="INVALID_AMOUNT")
        if not reason or not reason.strip():
            raise ValidationError("Adjustment reason is required", code="REASON_REQUIRED")
        if self.session.get(Member, userId) is None:
            raise ValidationError(f"Member {userId} not found", code="MEMBER_NOT_FOUND")

        adjustment = BalanceAdjustment(
            memberID=userId,
            amount=amount,
            reason=reason.strip(),
            adminID=adminId
        )
        self.session.add(adjustment)
        self.session.commit()

        logger.info(f"Admin {adminId} adjusted balance of member {userId} by {amount}: {reason}")
        return adjustment

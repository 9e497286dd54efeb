# models/withdrawal.py
"""
Withdrawal model - payout requests debiting the available balance.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from models.base import Base, AuditMixin


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that still hold money out of the available balance
RESERVING_STATUSES = (
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.PROCESSING.value,
    WithdrawalStatus.COMPLETED.value,
)


class Withdrawal(Base, AuditMixin):
    __tablename__ = 'withdrawals'

    withdrawalID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # Whole KZT
    fee = Column(Integer, nullable=False, default=0)
    method = Column(String, nullable=True)  # card, bank, crypto, cash

    status = Column(String, nullable=False, default=WithdrawalStatus.PENDING.value)
    processedAt = Column(DateTime, nullable=True)
    processedBy = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<Withdrawal(withdrawalID={self.withdrawalID}, amount={self.amount}, status={self.status})>"

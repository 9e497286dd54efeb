# models/balance_adjustment.py
"""
BalanceAdjustment model - manual admin corrections of the available balance.
Append-only.
"""
from sqlalchemy import Column, Integer, String, ForeignKey
from models.base import Base, AuditMixin


class BalanceAdjustment(Base, AuditMixin):
    __tablename__ = 'balance_adjustments'

    adjustmentID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # Signed whole KZT
    reason = Column(String, nullable=False)
    adminID = Column(Integer, nullable=False)

    def __repr__(self):
        return f"<BalanceAdjustment(member={self.memberID}, amount={self.amount})>"

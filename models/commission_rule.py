# models/commission_rule.py
"""
CommissionRule model - versioned percentage table.
Active rule = latest effectiveFrom <= event time for (plan, structure, level).
"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, UniqueConstraint
from models.base import Base, AuditMixin


class CommissionRule(Base, AuditMixin):
    __tablename__ = 'commission_rules'
    __table_args__ = (
        UniqueConstraint(
            'planID', 'structureType', 'level', 'effectiveFrom',
            name='uq_rule_version'
        ),
    )

    ruleID = Column(Integer, primary_key=True, autoincrement=True)
    planID = Column(String, nullable=False, default='default')
    structureType = Column(Integer, nullable=False)
    level = Column(Integer, nullable=False)
    percent = Column(Numeric(5, 2), nullable=False)  # 10.00 = 10%
    effectiveFrom = Column(DateTime, nullable=False)

    def __repr__(self):
        return (
            f"<CommissionRule(S{self.structureType} L{self.level} = {self.percent}% "
            f"from {self.effectiveFrom})>"
        )

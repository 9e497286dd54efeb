# models/no_commission_record.py
"""
NoCommissionRecord model - persisted reason why an ancestor got nothing.
Feeds the audit and network views.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class NoCommissionRecord(Base, AuditMixin):
    __tablename__ = 'no_commission_records'
    __table_args__ = (
        UniqueConstraint('sourceEventID', 'candidateID', 'level', name='uq_no_commission_key'),
    )

    recordID = Column(Integer, primary_key=True, autoincrement=True)
    sourceEventID = Column(Integer, ForeignKey('source_events.eventID'), nullable=False, index=True)
    sourceMemberID = Column(Integer, nullable=False, index=True)
    candidateID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    level = Column(Integer, nullable=False)
    structureType = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)

    def __repr__(self):
        return (
            f"<NoCommissionRecord(event={self.sourceEventID}, candidate={self.candidateID}, "
            f"L{self.level}, reason={self.reason})>"
        )

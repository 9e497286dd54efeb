# models/sponsor_binding.py
"""
SponsorBinding model - append-only log of sponsor assignments.

The sponsor of a member in a structure at time T is the binding with the
highest sequence whose boundAt <= T. Rows are never updated; an admin
override appends a new sequence.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from models.base import Base, _get_current_time


class SponsorBinding(Base):
    __tablename__ = 'sponsor_bindings'
    __table_args__ = (
        # First bind per structure is sequence=1, so racing binds collide here
        UniqueConstraint('memberID', 'structureType', 'sequence', name='uq_binding_sequence'),
        Index('ix_binding_sponsor_structure', 'sponsorID', 'structureType'),
    )

    bindingID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    sponsorID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    structureType = Column(Integer, nullable=False)  # 1 = subscription, 2 = purchase
    sequence = Column(Integer, nullable=False, default=1)

    boundAt = Column(DateTime, nullable=False, default=_get_current_time)
    boundBy = Column(Integer, nullable=True)  # Admin memberID for overrides
    notes = Column(String, nullable=True)

    def __repr__(self):
        return (
            f"<SponsorBinding(member={self.memberID}, sponsor={self.sponsorID}, "
            f"structure={self.structureType}, seq={self.sequence})>"
        )

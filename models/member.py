# models/member.py
"""
Member model - platform account taking part in the referral structures.
Sponsor relations live in SponsorBinding; subscription state in SubscriptionPeriod.
"""
from sqlalchemy import Column, Integer, String, Boolean
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Member(Base, AuditMixin):
    __tablename__ = 'members'

    # Primary key
    memberID = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    fullName = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    referralCode = Column(String, nullable=False, unique=True, index=True)

    # Flags
    isMarketingFreeAccess = Column(Boolean, default=False, nullable=False)  # Never generates commissions
    isAdmin = Column(Boolean, default=False, nullable=False)

    # Note: createdAt, updatedAt - from AuditMixin

    # Relationships
    subscriptionPeriods = relationship(
        'SubscriptionPeriod',
        back_populates='member',
        order_by='SubscriptionPeriod.startsAt'
    )

    def __repr__(self):
        return f"<Member(memberID={self.memberID}, code={self.referralCode})>"

# models/subscription_period.py
"""
SubscriptionPeriod model - paid subscription intervals.
A member is subscribed at T iff some period covers T.
"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class SubscriptionPeriod(Base, AuditMixin):
    __tablename__ = 'subscription_periods'

    periodID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    startsAt = Column(DateTime, nullable=False)
    endsAt = Column(DateTime, nullable=False)  # Exclusive

    sourceEventID = Column(Integer, ForeignKey('source_events.eventID'), nullable=True)

    member = relationship('Member', back_populates='subscriptionPeriods')

    def covers(self, moment) -> bool:
        return self.startsAt <= moment < self.endsAt

    def __repr__(self):
        return f"<SubscriptionPeriod(member={self.memberID}, {self.startsAt} - {self.endsAt})>"

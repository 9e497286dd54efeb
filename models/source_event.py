# models/source_event.py
"""
SourceEvent model - subscription payments and product orders.
Each event distributes commissions up the matching structure.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class EventType(str, Enum):
    SUBSCRIPTION = "subscription"
    ORDER = "order"


class SourceEvent(Base, AuditMixin):
    __tablename__ = 'source_events'

    eventID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    eventType = Column(String, nullable=False)  # subscription, order
    structureType = Column(Integer, nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # Whole KZT
    occurredAt = Column(DateTime, nullable=False, index=True)

    externalRef = Column(String, nullable=True, unique=True)  # Payment/order id from the shop

    member = relationship('Member')

    def __repr__(self):
        return (
            f"<SourceEvent(eventID={self.eventID}, type={self.eventType}, "
            f"member={self.memberID}, amount={self.amount})>"
        )

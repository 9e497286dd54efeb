# models/commission_entry.py
"""
CommissionEntry model - the commission ledger.

Append-only: rows are never deleted, amounts and keys never change.
Only status/frozenUntil/releasedAt move, along ALLOWED_TRANSITIONS
(enforced by models/listeners/ledger_listeners.py). Wrong entries are
offset by 'reversal' rows.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from models.base import Base, AuditMixin


class EntryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    FROZEN = "frozen"


class EntryKind(str, Enum):
    COMMISSION = "commission"  # Regular distribution
    CORRECTION = "correction"  # Backfill top-up of an underpaid key
    REVERSAL = "reversal"  # Negative offset approved by an admin


ALLOWED_TRANSITIONS = {
    EntryStatus.PENDING.value: {
        EntryStatus.PROCESSING.value,
        EntryStatus.COMPLETED.value,
        EntryStatus.FAILED.value,
    },
    EntryStatus.PROCESSING.value: {
        EntryStatus.COMPLETED.value,
        EntryStatus.FAILED.value,
    },
    EntryStatus.FROZEN.value: {
        EntryStatus.COMPLETED.value,
        EntryStatus.PENDING.value,
    },
    EntryStatus.COMPLETED.value: set(),
    EntryStatus.FAILED.value: set(),
}

# Columns a ledger row may change after insert
MUTABLE_COLUMNS = {'status', 'frozenUntil', 'releasedAt', 'updatedAt'}


class CommissionEntry(Base, AuditMixin):
    __tablename__ = 'commission_entries'
    __table_args__ = (
        # Idempotency key: one row per (event, recipient, level, kind, sequence)
        UniqueConstraint(
            'sourceEventID', 'recipientID', 'level', 'entryKind', 'sequence',
            name='uq_commission_idempotency'
        ),
        Index('ix_commission_recipient_status', 'recipientID', 'status'),
    )

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    recipientID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    sourceEventID = Column(Integer, ForeignKey('source_events.eventID'), nullable=False, index=True)
    sourceMemberID = Column(Integer, nullable=False, index=True)  # Denormalized from SourceEvent

    # Distribution
    level = Column(Integer, nullable=False)
    structureType = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # Signed whole KZT, negative for reversals
    percent = Column(String, nullable=True)  # Rule percent at event time, for display

    # State
    status = Column(String, nullable=False, default=EntryStatus.PENDING.value)
    frozenUntil = Column(DateTime, nullable=True)  # NULL + frozen = until resubscription
    releasedAt = Column(DateTime, nullable=True)

    # Bookkeeping
    entryKind = Column(String, nullable=False, default=EntryKind.COMMISSION.value)
    sequence = Column(Integer, nullable=False, default=0)  # Correction ordinal, 0 for other kinds
    reversesEntryID = Column(Integer, ForeignKey('commission_entries.entryID'), nullable=True)
    createdBy = Column(String, nullable=False, default='system')  # system, backfill, admin:<id>
    notes = Column(String, nullable=True)

    @property
    def idempotencyKey(self):
        return (self.sourceEventID, self.recipientID, self.level, self.entryKind, self.sequence or 0)

    def __repr__(self):
        return (
            f"<CommissionEntry(entryID={self.entryID}, event={self.sourceEventID}, "
            f"recipient={self.recipientID}, L{self.level}, {self.entryKind}, "
            f"amount={self.amount}, status={self.status})>"
        )

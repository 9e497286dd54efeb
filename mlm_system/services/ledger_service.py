# mlm_system/services/ledger_service.py
"""
Ledger service - idempotent writes to the commission ledger.

Every insert is keyed by (sourceEventID, recipientID, level, entryKind,
sequence); sequence numbers successive corrections of one key.
An existing key is a no-op. Two writers racing on the same key are
serialized by the unique constraint: the loser's SAVEPOINT is rolled
back and the insert resolves to a no-op, so retries and overlapping
backfills never pay twice.
"""
from collections import defaultdict
from typing import Optional, Dict, Tuple, Iterable, List
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from models.commission_entry import CommissionEntry, EntryKind
from models.no_commission_record import NoCommissionRecord
from mlm_system.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

# (sourceEventID, recipientID, level)
LevelKey = Tuple[int, int, int]


class LedgerService:
    """Service for ledger inserts and reads."""

    def __init__(self, session: Session):
        self.session = session

    # ============================================================
    # WRITES
    # ============================================================

    def insertEntry(self, entry: CommissionEntry) -> Optional[CommissionEntry]:
        """
        Insert a ledger row unless its idempotency key already exists.

        Args:
            entry: Transient CommissionEntry

        Returns:
            The persisted entry, or None if the key was already taken
        """
        if self.findEntry(*entry.idempotencyKey) is not None:
            logger.debug(f"Ledger key {entry.idempotencyKey} exists, skipping")
            return None

        try:
            return self._insertGuarded(entry)
        except ConcurrencyConflict as e:
            logger.warning(f"Ledger insert lost race, treated as no-op: {e}")
            return None

    def _insertGuarded(self, entry: CommissionEntry) -> CommissionEntry:
        """
        Insert inside a SAVEPOINT.

        Raises:
            ConcurrencyConflict: Unique key taken by a concurrent writer
        """
        try:
            with self.session.begin_nested():
                self.session.add(entry)
        except IntegrityError as e:
            raise ConcurrencyConflict(
                f"Idempotency key {entry.idempotencyKey} already present",
                key=list(entry.idempotencyKey)
            ) from e

        logger.info(
            f"Ledger entry {entry.entryID}: event={entry.sourceEventID} "
            f"recipient={entry.recipientID} L{entry.level} {entry.entryKind} "
            f"amount={entry.amount} status={entry.status}"
        )
        return entry

    def recordSkip(
            self,
            sourceEventId: int,
            sourceMemberId: int,
            candidateId: int,
            level: int,
            structureType: int,
            reason: str
    ) -> Optional[NoCommissionRecord]:
        """Persist a no-commission reason once per (event, candidate, level)."""
        existing = self.session.query(NoCommissionRecord).filter_by(
            sourceEventID=sourceEventId,
            candidateID=candidateId,
            level=level
        ).first()
        if existing is not None:
            return None

        record = NoCommissionRecord(
            sourceEventID=sourceEventId,
            sourceMemberID=sourceMemberId,
            candidateID=candidateId,
            level=level,
            structureType=int(structureType),
            reason=reason
        )
        try:
            with self.session.begin_nested():
                self.session.add(record)
        except IntegrityError:
            logger.debug(f"Skip record for event {sourceEventId} L{level} written concurrently")
            return None

        return record

    # ============================================================
    # READS
    # ============================================================

    def findEntry(
            self,
            sourceEventId: int,
            recipientId: int,
            level: int,
            entryKind: str = EntryKind.COMMISSION.value,
            sequence: int = 0
    ) -> Optional[CommissionEntry]:
        return self.session.query(CommissionEntry).filter_by(
            sourceEventID=sourceEventId,
            recipientID=recipientId,
            level=level,
            entryKind=entryKind,
            sequence=sequence
        ).first()

    def entriesForEvents(self, eventIds: Iterable[int]) -> List[CommissionEntry]:
        ids = list(eventIds)
        if not ids:
            return []
        return self.session.query(CommissionEntry).filter(
            CommissionEntry.sourceEventID.in_(ids)
        ).order_by(CommissionEntry.sourceEventID, CommissionEntry.level, CommissionEntry.entryID).all()

    def actualByKey(self, eventIds: Iterable[int]) -> Dict[LevelKey, Dict[str, object]]:
        """
        Net amount per (event, recipient, level) over all entry kinds.

        Returns:
            Dict key -> {"amount": int, "entries": [CommissionEntry, ...]}
        """
        actual: Dict[LevelKey, Dict[str, object]] = defaultdict(lambda: {"amount": 0, "entries": []})
        for entry in self.entriesForEvents(eventIds):
            bucket = actual[(entry.sourceEventID, entry.recipientID, entry.level)]
            bucket["amount"] += entry.amount
            bucket["entries"].append(entry)
        return dict(actual)

    def skipReasons(self, sourceEventIds: Iterable[int]) -> Dict[Tuple[int, int, int], str]:
        ids = list(sourceEventIds)
        if not ids:
            return {}
        records = self.session.query(NoCommissionRecord).filter(
            NoCommissionRecord.sourceEventID.in_(ids)
        ).all()
        return {(r.sourceEventID, r.candidateID, r.level): r.reason for r in records}

# mlm_system/services/integrity_service.py
"""
Integrity service - finds ledger rows the rules never allowed and offsets
them with admin-approved reversal entries.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Iterable
from sqlalchemy.orm import Session
from sqlalchemy import func
import logging

from config import Config
from models.source_event import SourceEvent
from models.commission_entry import CommissionEntry, EntryKind, EntryStatus
from mlm_system.config.structures import NoCommissionReason
from mlm_system.services.ledger_service import LedgerService
from mlm_system.services.reconciliation_service import ReconciliationService, ReconciliationState
from mlm_system.utils.chain_walker import chunked
from mlm_system.utils.permissions import require_admin

logger = logging.getLogger(__name__)


class ViolationKind(str, Enum):
    OVERPAID = "OVERPAID"
    EARLY_UNLOCK = "EARLY_UNLOCK"
    MARKETING_FREE = "MARKETING_FREE"


@dataclass
class LedgerViolation:
    kind: ViolationKind
    eventId: int
    recipientId: Optional[int]
    level: Optional[int]
    excess: int
    entryIds: List[int] = field(default_factory=list)
    reason: Optional[str] = None

    def toDict(self) -> Dict:
        return {
            "kind": self.kind.value,
            "event_id": self.eventId,
            "recipient_id": self.recipientId,
            "level": self.level,
            "excess": self.excess,
            "entry_ids": list(self.entryIds),
            "reason": self.reason,
        }


class IntegrityService:
    """Service for ledger integrity audits."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)
        self.reconciliation = ReconciliationService(session)

    def findViolations(self, structureType=None) -> List[LedgerViolation]:
        """
        Scan all events for overpaid keys.

        A key paid while the rules expected nothing is classified by the
        skip reason: level_N_locked -> EARLY_UNLOCK, marketing_free_access
        -> MARKETING_FREE, anything else -> OVERPAID. An event whose entries
        add up to more than its amount is OVERPAID even when no single key is.
        """
        violations: List[LedgerViolation] = []
        batchSize = max(1, int(Config.get(Config.BACKFILL_BATCH_SIZE)))

        for batch in chunked(self._eventIds(structureType), batchSize):
            events = self.session.query(SourceEvent).filter(
                SourceEvent.eventID.in_(batch)
            ).order_by(SourceEvent.eventID).all()

            for event in events:
                eventViolations = [
                    self._classify(item)
                    for item in self.reconciliation.diffEvent(event)
                    if item.state == ReconciliationState.OVERPAID
                ]
                violations.extend(eventViolations)

                if not eventViolations:
                    distributed = self._eventTotal(event.eventID)
                    if distributed > event.amount:
                        violations.append(LedgerViolation(
                            kind=ViolationKind.OVERPAID,
                            eventId=event.eventID,
                            recipientId=None,
                            level=None,
                            excess=distributed - event.amount,
                            reason="event_total_exceeds_amount"
                        ))

        if violations:
            logger.warning(f"Integrity scan found {len(violations)} violations")
        else:
            logger.info("Integrity scan found no violations")
        return violations

    def fixViolations(
            self,
            adminId: int,
            dryRun: bool = True,
            kinds: Optional[Iterable[str]] = None
    ) -> Dict:
        """
        Offset violations with reversal entries.

        Each reversal carries the negative excess, points at the reversed
        entry and inherits its status, so it lands in the same balance
        bucket. Nothing is deleted or updated.

        Raises:
            Unauthorized: adminId is not an admin
        """
        require_admin(self.session, adminId)
        wanted = {ViolationKind(k) for k in kinds} if kinds else set(ViolationKind)

        result = {
            "success": True,
            "dry_run": dryRun,
            "violations_found": 0,
            "reversals_created": 0,
            "total_reversed": 0,
            "details": [],
            "unfixable": [],
        }

        for violation in self.findViolations():
            if violation.kind not in wanted:
                continue
            result["violations_found"] += 1

            target = self._reversalTarget(violation)
            if target is None:
                result["unfixable"].append(violation.toDict())
                continue

            result["details"].append(violation.toDict())
            if dryRun:
                result["reversals_created"] += 1
                result["total_reversed"] += violation.excess
                continue

            reversal = self.ledger.insertEntry(CommissionEntry(
                recipientID=target.recipientID,
                sourceEventID=target.sourceEventID,
                sourceMemberID=target.sourceMemberID,
                level=target.level,
                structureType=target.structureType,
                amount=-violation.excess,
                percent=target.percent,
                status=target.status,
                frozenUntil=target.frozenUntil,
                entryKind=EntryKind.REVERSAL.value,
                reversesEntryID=target.entryID,
                createdBy=f"admin:{adminId}",
                notes=f"Reversal of {violation.kind.value}"
            ))
            if reversal is None:
                result["unfixable"].append(violation.toDict())
                continue

            result["reversals_created"] += 1
            result["total_reversed"] += violation.excess

        if not dryRun:
            self.session.commit()

        logger.info(
            f"Admin {adminId} fixed violations (dry_run={dryRun}): "
            f"{result['reversals_created']} reversals, total {result['total_reversed']}"
        )
        return result

    # ============================================================
    # INTERNAL
    # ============================================================

    @staticmethod
    def _classify(item) -> LedgerViolation:
        kind = ViolationKind.OVERPAID
        if item.expected == 0 and item.reason:
            if item.reason.startswith("level_") and item.reason.endswith("_locked"):
                kind = ViolationKind.EARLY_UNLOCK
            elif item.reason == NoCommissionReason.MARKETING_FREE_ACCESS.value:
                kind = ViolationKind.MARKETING_FREE

        return LedgerViolation(
            kind=kind,
            eventId=item.eventId,
            recipientId=item.recipientId,
            level=item.level,
            excess=item.actual - item.expected,
            entryIds=item.entryIds,
            reason=item.reason
        )

    def _reversalTarget(self, violation: LedgerViolation) -> Optional[CommissionEntry]:
        """The positive entry a reversal offsets; None for event-level or failed rows."""
        if violation.recipientId is None or not violation.entryIds:
            return None
        entries = self.session.query(CommissionEntry).filter(
            CommissionEntry.entryID.in_(violation.entryIds),
            CommissionEntry.amount > 0,
            CommissionEntry.status != EntryStatus.FAILED.value
        ).order_by(CommissionEntry.entryID).all()
        return entries[0] if entries else None

    def _eventIds(self, structureType) -> List[int]:
        query = self.session.query(SourceEvent.eventID)
        if structureType is not None:
            query = query.filter(SourceEvent.structureType == int(structureType))
        return [row[0] for row in query.order_by(SourceEvent.eventID).all()]

    def _eventTotal(self, eventId: int) -> int:
        total = self.session.query(func.coalesce(func.sum(CommissionEntry.amount), 0)).filter(
            CommissionEntry.sourceEventID == eventId
        ).scalar()
        return int(total or 0)

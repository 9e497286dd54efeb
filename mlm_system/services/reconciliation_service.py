# mlm_system/services/reconciliation_service.py
"""
Reconciliation service - compares the ledger with what the rules owe.

For every source event the expected distribution is recomputed from
point-in-time state (binding log, subscription periods, activation,
rule versions) and compared with the ledger per (recipient, level).
Backfill appends what is missing; it never rewrites or removes entries.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
import logging

from config import Config
from models.member import Member
from models.source_event import SourceEvent
from models.commission_entry import EntryKind
from mlm_system.config.structures import StructureType, NoCommissionReason, get_structure_settings
from mlm_system.errors import MLMError
from mlm_system.services.commission_service import CommissionService, CommissionPlan, PlannedCommission
from mlm_system.services.ledger_service import LedgerService
from mlm_system.services.network_service import NetworkService
from mlm_system.utils.chain_walker import chunked
from mlm_system.utils.permissions import require_admin

logger = logging.getLogger(__name__)


class ReconciliationState(str, Enum):
    MISSING = "MISSING"
    OK = "OK"
    UNDERPAID = "UNDERPAID"
    OVERPAID = "OVERPAID"


@dataclass
class ReconciliationItem:
    """Expected vs. actual for one (event, recipient, level)."""
    eventId: int
    recipientId: int
    level: int
    state: ReconciliationState
    expected: int
    actual: int
    reason: Optional[str] = None
    planned: Optional[PlannedCommission] = None
    entryIds: List[int] = field(default_factory=list)
    nextCorrection: int = 1

    @property
    def difference(self) -> int:
        return self.expected - self.actual

    @property
    def needsBackfill(self) -> bool:
        return self.state in (ReconciliationState.MISSING, ReconciliationState.UNDERPAID)


class ReconciliationService:
    """Service for commission audits and backfills."""

    def __init__(self, session: Session):
        self.session = session
        self.commissions = CommissionService(session)
        self.ledger = LedgerService(session)
        self.network = NetworkService(session)

    # ============================================================
    # DIFF
    # ============================================================

    def expectedForEvent(self, event: SourceEvent) -> CommissionPlan:
        """Recompute the event's distribution. Writes nothing."""
        return self.commissions.buildPlan(event)

    def diffEvent(self, event: SourceEvent) -> List[ReconciliationItem]:
        """
        Compare expected and actual per (recipient, level).

        Actual sums commission, correction and reversal entries of the key.
        Keys with entries but no expected commission are reported OVERPAID
        with expected = 0.

        Returns:
            Items ordered by level
        """
        plan = self.expectedForEvent(event)
        actual = self.ledger.actualByKey([event.eventID])
        skipReasons = {(d.ancestorId, d.level): d.reason for d in plan.skips}

        items = []
        seen = set()

        for planned in plan.commissions:
            key = (event.eventID, planned.recipientId, planned.level)
            seen.add(key)
            bucket = actual.get(key)

            if bucket is None:
                state = ReconciliationState.MISSING
                actualAmount = 0
                entryIds = []
                nextCorrection = 1
            else:
                actualAmount = bucket["amount"]
                entryIds = [e.entryID for e in bucket["entries"]]
                nextCorrection = 1 + max(
                    (e.sequence or 0 for e in bucket["entries"] if e.entryKind == EntryKind.CORRECTION.value),
                    default=0
                )
                if actualAmount < planned.amount:
                    state = ReconciliationState.UNDERPAID
                elif actualAmount > planned.amount:
                    state = ReconciliationState.OVERPAID
                else:
                    state = ReconciliationState.OK

            items.append(ReconciliationItem(
                eventId=event.eventID,
                recipientId=planned.recipientId,
                level=planned.level,
                state=state,
                expected=planned.amount,
                actual=actualAmount,
                planned=planned,
                entryIds=entryIds,
                nextCorrection=nextCorrection
            ))

        for key, bucket in actual.items():
            if key in seen or bucket["amount"] <= 0:
                continue
            _, recipientId, level = key
            items.append(ReconciliationItem(
                eventId=event.eventID,
                recipientId=recipientId,
                level=level,
                state=ReconciliationState.OVERPAID,
                expected=0,
                actual=bucket["amount"],
                reason=skipReasons.get((recipientId, level), NoCommissionReason.UNKNOWN.value),
                entryIds=[e.entryID for e in bucket["entries"]]
            ))

        items.sort(key=lambda item: (item.level, item.recipientId))
        return items

    # ============================================================
    # AUDIT
    # ============================================================

    def auditUserCommissions(
            self,
            adminId: int,
            userId: int,
            structureType=StructureType.SUBSCRIPTION,
            maxLevels: Optional[int] = None
    ) -> List[Dict]:
        """
        Per-partner audit of what a member earned from their network.

        One row per partner event (partners without events get one row with
        event_id None). Partners deeper than the structure depth are listed
        with too_deep.

        Raises:
            Unauthorized: adminId is not an admin
        """
        require_admin(self.session, adminId)
        structureType = StructureType(int(structureType))
        depth = get_structure_settings(structureType).maxLevels
        nodes = self.network.resolve(userId, structureType, maxLevels or depth)

        eventsByMember = self._eventsByMember(
            [node.member.memberID for node in nodes], structureType
        )

        rows = []
        for node in nodes:
            partner = node.member
            events = eventsByMember.get(partner.memberID, [])

            if node.level > depth:
                rows.append(self._auditRow(node, None, reason=NoCommissionReason.TOO_DEEP.value))
                continue

            if not events:
                rows.append(self._auditRow(node, None))
                continue

            for event in events:
                item = self._itemFor(event, userId, node.level)
                if item is not None:
                    rows.append(self._auditRow(node, event, item=item))
                    continue
                reason = self._skipReasonFor(event, userId, node.level)
                rows.append(self._auditRow(node, event, reason=reason))

        logger.info(
            f"Admin {adminId} audited S{int(structureType)} commissions of member {userId}: "
            f"{len(rows)} rows"
        )
        return rows

    # ============================================================
    # BACKFILL
    # ============================================================

    def backfillCommissions(
            self,
            adminId: int,
            dryRun: bool = True,
            target: Optional[int] = None,
            structureType=None,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None
    ) -> Dict:
        """
        Create missing commission entries and top up underpaid ones.

        MISSING keys get a commission entry, UNDERPAID keys a correction
        entry for the difference. OVERPAID keys are left to IntegrityService.

        Args:
            adminId: Admin running the backfill
            dryRun: Only report what would be written
            target: Limit to items owed to this sponsor
            structureType: Limit to one structure
            start: Events at or after this moment
            end: Events before this moment

        Returns:
            Summary dict; details are identical for dry and real runs
        """
        require_admin(self.session, adminId)
        createdBy = f"backfill:{adminId}"

        result = {
            "success": True,
            "commissions_created": 0,
            "commissions_skipped": 0,
            "total_amount": 0,
            "events_processed": 0,
            "dry_run": dryRun,
            "details": [],
            "errors": [],
        }

        eventIds = self._eventIds(structureType, start, end)
        batchSize = max(1, int(Config.get(Config.BACKFILL_BATCH_SIZE)))

        logger.info(
            f"Backfill by admin {adminId} (dry_run={dryRun}, target={target}, "
            f"structure={structureType}): {len(eventIds)} events"
        )

        for batch in chunked(eventIds, batchSize):
            for event in self._loadEvents(batch):
                try:
                    with self.session.begin_nested():
                        outcome = self._backfillEvent(event, target, dryRun, createdBy)
                except (MLMError, SQLAlchemyError) as e:
                    logger.error(f"Backfill failed for event {event.eventID}: {e}")
                    result["errors"].append({"event_id": event.eventID, "error": str(e)})
                else:
                    result["details"].extend(outcome["details"])
                    for counter in ("commissions_created", "commissions_skipped", "total_amount"):
                        result[counter] += outcome[counter]
                result["events_processed"] += 1

            if not dryRun:
                self.session.commit()

        logger.info(
            f"Backfill done (dry_run={dryRun}): {result['commissions_created']} created, "
            f"{result['commissions_skipped']} skipped, total {result['total_amount']}, "
            f"{len(result['errors'])} errors"
        )
        return result

    def getSponsorsWithMissingCommissions(self, adminId: int, structureType=None) -> List[Dict]:
        """
        Sponsors owed MISSING or UNDERPAID commissions, largest debt first.

        Raises:
            Unauthorized: adminId is not an admin
        """
        require_admin(self.session, adminId)

        owed: Dict[int, Dict] = {}
        for batch in chunked(self._eventIds(structureType, None, None), int(Config.get(Config.BACKFILL_BATCH_SIZE))):
            for event in self._loadEvents(batch):
                for item in self.diffEvent(event):
                    if not item.needsBackfill:
                        continue
                    row = owed.setdefault(item.recipientId, {
                        "sponsor_id": item.recipientId,
                        "missing_count": 0,
                        "missing_amount": 0,
                        "partners": set(),
                    })
                    row["missing_count"] += 1
                    row["missing_amount"] += item.difference
                    row["partners"].add(event.memberID)

        sponsors = []
        for sponsorId, row in owed.items():
            sponsor = self.session.get(Member, sponsorId)
            sponsors.append({
                "sponsor_id": sponsorId,
                "sponsor_name": sponsor.fullName if sponsor else None,
                "sponsor_email": sponsor.email if sponsor else None,
                "missing_count": row["missing_count"],
                "missing_amount": row["missing_amount"],
                "partners_count": len(row["partners"]),
            })

        sponsors.sort(key=lambda s: (-s["missing_amount"], s["sponsor_id"]))
        return sponsors

    # ============================================================
    # INTERNAL
    # ============================================================

    def _backfillEvent(
            self,
            event: SourceEvent,
            target: Optional[int],
            dryRun: bool,
            createdBy: str
    ) -> Dict:
        """Backfill one event; counters are merged only if the event succeeds."""
        result = {"details": [], "commissions_created": 0, "commissions_skipped": 0, "total_amount": 0}

        for item in self.diffEvent(event):
            if not item.needsBackfill:
                continue
            if target is not None and item.recipientId != target:
                continue

            if item.state == ReconciliationState.MISSING:
                entryKind = EntryKind.COMMISSION.value
                sequence = 0
            else:
                entryKind = EntryKind.CORRECTION.value
                sequence = item.nextCorrection
            amount = item.difference

            result["details"].append({
                "event_id": event.eventID,
                "event_type": event.eventType,
                "source_member_id": event.memberID,
                "source_amount": event.amount,
                "recipient_id": item.recipientId,
                "level": item.level,
                "state": item.state.value,
                "entry_kind": entryKind,
                "amount": amount,
            })

            if dryRun:
                taken = self.ledger.findEntry(
                    event.eventID, item.recipientId, item.level, entryKind, sequence
                ) is not None
            else:
                taken = self.ledger.insertEntry(item.planned.toEntry(
                    event,
                    entryKind=entryKind,
                    amount=amount,
                    createdBy=createdBy,
                    notes=f"Backfill {item.state.value.lower()}",
                    sequence=sequence
                )) is None

            if taken:
                result["commissions_skipped"] += 1
                continue

            result["commissions_created"] += 1
            result["total_amount"] += amount

        return result

    def _eventIds(
            self,
            structureType,
            start: Optional[datetime],
            end: Optional[datetime]
    ) -> List[int]:
        query = self.session.query(SourceEvent.eventID)
        if structureType is not None:
            query = query.filter(SourceEvent.structureType == int(structureType))
        if start is not None:
            query = query.filter(SourceEvent.occurredAt >= start)
        if end is not None:
            query = query.filter(SourceEvent.occurredAt < end)
        return [row[0] for row in query.order_by(SourceEvent.occurredAt, SourceEvent.eventID).all()]

    def _loadEvents(self, eventIds: List[int]) -> List[SourceEvent]:
        return self.session.query(SourceEvent).filter(
            SourceEvent.eventID.in_(eventIds)
        ).order_by(SourceEvent.occurredAt, SourceEvent.eventID).all()

    def _eventsByMember(self, memberIds: List[int], structureType) -> Dict[int, List[SourceEvent]]:
        events: Dict[int, List[SourceEvent]] = {}
        for chunk in chunked(sorted(set(memberIds))):
            for event in self.session.query(SourceEvent).filter(
                    SourceEvent.memberID.in_(chunk),
                    SourceEvent.structureType == int(structureType)
            ).order_by(SourceEvent.occurredAt, SourceEvent.eventID).all():
                events.setdefault(event.memberID, []).append(event)
        return events

    def _itemFor(self, event: SourceEvent, recipientId: int, level: int) -> Optional[ReconciliationItem]:
        for item in self.diffEvent(event):
            if item.recipientId == recipientId and item.level == level:
                return item
        return None

    def _skipReasonFor(self, event: SourceEvent, recipientId: int, level: int) -> str:
        persisted = self.ledger.skipReasons([event.eventID]).get((event.eventID, recipientId, level))
        if persisted:
            return persisted
        for decision in self.expectedForEvent(event).skips:
            if decision.ancestorId == recipientId and decision.level == level:
                return decision.reason or NoCommissionReason.UNKNOWN.value
        # Root was not in the upline at event time
        return NoCommissionReason.UNKNOWN.value

    @staticmethod
    def _auditRow(node, event: Optional[SourceEvent], item: Optional[ReconciliationItem] = None,
                  reason: Optional[str] = None) -> Dict:
        expected = item.expected if item else 0
        actual = item.actual if item else 0
        return {
            "partner_id": node.member.memberID,
            "partner_name": node.member.fullName,
            "level": node.level,
            "event_id": event.eventID if event else None,
            "subscription_amount": event.amount if event else 0,
            "expected_percent": str(item.planned.percent) if item and item.planned else None,
            "expected_commission": expected,
            "commission_received": actual > 0,
            "commission_amount": actual,
            "actual_vs_expected": item.state.value if item else ReconciliationState.OK.value,
            "difference": actual - expected,
            "no_commission_reason": None if item and item.expected > 0 else (item.reason if item else reason),
        }

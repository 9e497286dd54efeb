# mlm_system/services/commission_service.py
"""
Commission calculation service - distributes source events up the structure.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Dict, Optional, Tuple
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.source_event import SourceEvent, EventType
from models.commission_entry import CommissionEntry, EntryStatus, EntryKind
from mlm_system.config.structures import StructureType, NoCommissionReason
from mlm_system.errors import ValidationError
from mlm_system.services.eligibility_service import EligibilityService, EligibilityDecision
from mlm_system.services.ledger_service import LedgerService
from mlm_system.services.rule_service import RuleService
from mlm_system.services.subscription_service import SubscriptionService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

EVENT_STRUCTURE = {
    EventType.SUBSCRIPTION.value: StructureType.SUBSCRIPTION,
    EventType.ORDER.value: StructureType.PURCHASE,
}


def round_kzt(value: Decimal) -> int:
    """Round to whole tenge, half up."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PlannedCommission:
    """A commission the rules say an event owes one ancestor."""
    level: int
    recipientId: int
    amount: int
    percent: Decimal
    status: str
    frozenUntil: Optional[datetime] = None

    def toEntry(
            self,
            event: SourceEvent,
            entryKind: str = EntryKind.COMMISSION.value,
            amount: Optional[int] = None,
            createdBy: str = "system",
            notes: Optional[str] = None,
            sequence: int = 0
    ) -> CommissionEntry:
        return CommissionEntry(
            recipientID=self.recipientId,
            sourceEventID=event.eventID,
            sourceMemberID=event.memberID,
            level=self.level,
            structureType=event.structureType,
            amount=self.amount if amount is None else amount,
            percent=str(self.percent),
            status=self.status,
            frozenUntil=self.frozenUntil,
            entryKind=entryKind,
            sequence=sequence,
            createdBy=createdBy,
            notes=notes
        )


@dataclass
class CommissionPlan:
    """Full expected outcome of one event."""
    event: SourceEvent
    commissions: List[PlannedCommission]
    skips: List[EligibilityDecision]

    @property
    def total(self) -> int:
        return sum(c.amount for c in self.commissions)


class CommissionService:
    """Service for calculating MLM commissions."""

    def __init__(self, session: Session):
        self.session = session
        self.eligibility = EligibilityService(session)
        self.ledger = LedgerService(session)
        self.rules = RuleService(session)
        self.subscriptions = SubscriptionService(session)

    # ============================================================
    # SOURCE EVENTS
    # ============================================================

    def recordSubscriptionPayment(
            self,
            memberId: int,
            amount: int,
            paidAt: Optional[datetime] = None,
            months: int = 1,
            externalRef: Optional[str] = None
    ) -> Dict:
        """
        Register a subscription payment, extend the subscription and distribute
        Structure 1 commissions.

        The payment itself counts as subscription activation, so the payer
        is subscribed at the event time.
        """
        existing = self._findByExternalRef(externalRef)
        if existing is not None:
            logger.info(f"Payment {externalRef} already recorded as event {existing.eventID}")
            return self.processEvent(existing.eventID)

        paidAt = paidAt or timeMachine.now
        event = self._createEvent(memberId, EventType.SUBSCRIPTION, amount, paidAt, externalRef)
        self.subscriptions.addPeriod(memberId, paidAt, months=months, sourceEventId=event.eventID)

        return self.processEvent(event.eventID)

    def recordOrder(
            self,
            memberId: int,
            amount: int,
            orderedAt: Optional[datetime] = None,
            externalRef: Optional[str] = None
    ) -> Dict:
        """Register a paid product order and distribute Structure 2 commissions."""
        existing = self._findByExternalRef(externalRef)
        if existing is not None:
            logger.info(f"Order {externalRef} already recorded as event {existing.eventID}")
            return self.processEvent(existing.eventID)

        event = self._createEvent(
            memberId, EventType.ORDER, amount, orderedAt or timeMachine.now, externalRef
        )
        return self.processEvent(event.eventID)

    # ============================================================
    # CALCULATION
    # ============================================================

    def buildPlan(self, event: SourceEvent) -> CommissionPlan:
        """Evaluate eligibility and calculate amounts for an event, without writing."""
        decisions = self.eligibility.evaluate(event)
        commissions = self.calculate(event, decisions)

        paidLevels = {(c.recipientId, c.level) for c in commissions}
        skips = [
            d for d in decisions
            if (d.ancestorId, d.level) not in paidLevels
        ]
        return CommissionPlan(event=event, commissions=commissions, skips=skips)

    def calculate(
            self,
            event: SourceEvent,
            decisions: List[EligibilityDecision]
    ) -> List[PlannedCommission]:
        """
        Apply level percents to the event amount.

        amount = round_half_up(event.amount * percent / 100). The running
        total never exceeds the event amount: the level that would overflow
        gets the remainder and the rest get nothing.

        Args:
            event: SourceEvent
            decisions: Output of EligibilityService.evaluate

        Returns:
            Planned commissions for payable decisions, ordered by level
        """
        percents = self.rules.getActivePercents(event.structureType, event.occurredAt)
        freezeDays = int(Config.get(Config.COMMISSION_FREEZE_DAYS) or 0)

        planned = []
        remaining = int(event.amount)

        for decision in sorted(decisions, key=lambda d: d.level):
            if not decision.payable:
                continue

            percent = percents.get(decision.level)
            if percent is None:
                logger.warning(
                    f"No S{event.structureType} rule for L{decision.level} at {event.occurredAt}, "
                    f"event {event.eventID}"
                )
                decision.payable = False
                decision.reason = NoCommissionReason.NO_ACTIVE_RULE.value
                continue

            amount = round_kzt(Decimal(int(event.amount)) * percent / Decimal("100"))
            if amount > remaining:
                logger.warning(
                    f"Event {event.eventID}: L{decision.level} clipped {amount} -> {remaining} "
                    f"(rules exceed event amount)"
                )
                amount = remaining
            if amount <= 0:
                decision.payable = False
                decision.reason = (
                    NoCommissionReason.AMOUNT_EXHAUSTED.value if remaining <= 0
                    else NoCommissionReason.ZERO_AMOUNT.value
                )
                continue

            status, frozenUntil = self._initialStatus(event, decision, freezeDays)
            planned.append(PlannedCommission(
                level=decision.level,
                recipientId=decision.ancestorId,
                amount=amount,
                percent=percent,
                status=status,
                frozenUntil=frozenUntil
            ))
            remaining -= amount

        return planned

    def processEvent(self, eventId: int, createdBy: str = "system") -> Dict:
        """
        Process all commissions for an event.
        Safe to call repeatedly: existing ledger keys are left untouched.
        """
        event = self.session.get(SourceEvent, eventId)
        if not event:
            logger.error(f"Event {eventId} not found")
            return {"success": False, "error": "EVENT_NOT_FOUND"}

        results = {
            "success": True,
            "event": eventId,
            "commissions": [],
            "skipped": [],
            "noCommission": [],
            "totalDistributed": 0
        }

        plan = self.buildPlan(event)

        # 1. Ledger entries
        for planned in plan.commissions:
            entry = self.ledger.insertEntry(planned.toEntry(event, createdBy=createdBy))
            item = {
                "userId": planned.recipientId,
                "level": planned.level,
                "amount": planned.amount,
                "status": planned.status,
            }
            if entry is None:
                results["skipped"].append(item)
                continue
            results["commissions"].append(item)
            results["totalDistributed"] += planned.amount

        # 2. Persist skip reasons
        for decision in plan.skips:
            self.ledger.recordSkip(
                event.eventID,
                event.memberID,
                decision.ancestorId,
                decision.level,
                event.structureType,
                decision.reason or NoCommissionReason.UNKNOWN.value
            )
            results["noCommission"].append({
                "userId": decision.ancestorId,
                "level": decision.level,
                "reason": decision.reason,
            })

        self.session.commit()

        logger.info(
            f"Processed event {eventId}: "
            f"{len(results['commissions'])} commissions, "
            f"{len(results['skipped'])} already present, "
            f"{len(results['noCommission'])} skipped, "
            f"total {results['totalDistributed']}"
        )

        return results

    # ============================================================
    # INTERNAL
    # ============================================================

    @staticmethod
    def _initialStatus(
            event: SourceEvent,
            decision: EligibilityDecision,
            freezeDays: int
    ) -> Tuple[str, Optional[datetime]]:
        if decision.frozen:
            # Until resubscription
            return EntryStatus.FROZEN.value, None
        if freezeDays > 0:
            return EntryStatus.FROZEN.value, event.occurredAt + timedelta(days=freezeDays)
        return EntryStatus.PENDING.value, None

    def _findByExternalRef(self, externalRef: Optional[str]) -> Optional[SourceEvent]:
        if not externalRef:
            return None
        return self.session.query(SourceEvent).filter_by(externalRef=externalRef).first()

    def _createEvent(
            self,
            memberId: int,
            eventType: EventType,
            amount: int,
            occurredAt: datetime,
            externalRef: Optional[str]
    ) -> SourceEvent:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                f"Amount must be a positive whole number of tenge, got {amount!r}",
                code="INVALID_AMOUNT"
            )
        if self.session.get(Member, memberId) is None:
            raise ValidationError(f"Member {memberId} not found", code="MEMBER_NOT_FOUND")

        event = SourceEvent(
            memberID=memberId,
            eventType=eventType.value,
            structureType=int(EVENT_STRUCTURE[eventType.value]),
            amount=amount,
            occurredAt=occurredAt,
            externalRef=externalRef
        )
        self.session.add(event)
        self.session.flush()

        logger.info(
            f"Source event {event.eventID}: {eventType.value} by member {memberId}, "
            f"amount {amount} at {occurredAt}"
        )
        return event

# mlm_system/services/eligibility_service.py
"""
Eligibility service - decides, per ancestor and level, whether an event pays.

Each structure has its own policy:
- SubscriptionStructurePolicy (Structure 1): ancestor needs an active
  subscription; levels 2-5 need enough direct referrals at event time;
  a lapsed ancestor still earns, but frozen until resubscription.
- PurchaseStructurePolicy (Structure 2): level 1 always pays; deeper
  levels need the ancestor's monthly activation at event time.

Skips are returned as data (reason tags). EligibilityError is only used
inside this module to short-circuit a policy check.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Type
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.source_event import SourceEvent
from mlm_system.config.structures import (
    StructureType,
    StructureSettings,
    NoCommissionReason,
    get_structure_settings,
)
from mlm_system.errors import EligibilityError
from mlm_system.services.activation_service import ActivationService
from mlm_system.services.subscription_service import SubscriptionService
from mlm_system.utils.chain_walker import ChainWalker
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class EligibilityDecision:
    """Outcome for one (level, ancestor) pair."""
    level: int
    ancestorId: int
    payable: bool
    reason: Optional[str] = None
    frozen: bool = False  # Payable, but held until resubscription


class StructurePolicy:
    """Base policy; subclasses implement the structure's rules."""

    structureType: StructureType

    def __init__(self, service: "EligibilityService", settings: StructureSettings):
        self.service = service
        self.settings = settings

    def checkEvent(self, event: SourceEvent) -> None:
        """Raise EligibilityError if the event pays nobody."""

    def checkAncestor(self, ancestorId: int, level: int, at: datetime) -> bool:
        """
        Raise EligibilityError if the ancestor is skipped.

        Returns:
            True if the commission must be frozen
        """
        raise NotImplementedError

    def checkUnlocked(self, ancestorId: int, level: int, at: datetime) -> None:
        required = self.settings.unlockThresholds.get(level)
        if not required:
            return

        directCount = self.service.walker.count_direct_referrals_at_time(
            ancestorId, self.structureType, at
        )
        if directCount < required:
            raise EligibilityError(
                NoCommissionReason.level_locked(level),
                f"member {ancestorId} has {directCount}/{required} direct referrals"
            )


class SubscriptionStructurePolicy(StructurePolicy):
    structureType = StructureType.SUBSCRIPTION

    def checkEvent(self, event: SourceEvent) -> None:
        if not self.service.subscriptions.isSubscribedAt(event.memberID, event.occurredAt):
            raise EligibilityError(NoCommissionReason.SUBSCRIPTION_NOT_ACTIVE.value)

    def checkAncestor(self, ancestorId: int, level: int, at: datetime) -> bool:
        subscriptions = self.service.subscriptions

        if not subscriptions.hadSubscriptionBefore(ancestorId, at):
            raise EligibilityError(NoCommissionReason.SPONSOR_INACTIVE.value)

        self.checkUnlocked(ancestorId, level, at)

        # Lapsed: earns, but frozen until resubscription
        return not subscriptions.isSubscribedAt(ancestorId, at)


class PurchaseStructurePolicy(StructurePolicy):
    structureType = StructureType.PURCHASE

    def checkAncestor(self, ancestorId: int, level: int, at: datetime) -> bool:
        if level == 1:
            return False

        self.checkUnlocked(ancestorId, level, at)

        if not self.service.activations.isActivationMet(ancestorId, at):
            raise EligibilityError(NoCommissionReason.SPONSOR_INACTIVE.value)

        return False


POLICIES: Dict[StructureType, Type[StructurePolicy]] = {
    StructureType.SUBSCRIPTION: SubscriptionStructurePolicy,
    StructureType.PURCHASE: PurchaseStructurePolicy,
}


class EligibilityService:
    """Service evaluating commission eligibility for source events."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)
        self.subscriptions = SubscriptionService(session)
        self.activations = ActivationService(session)

    def getPolicy(self, structureType) -> StructurePolicy:
        structureType = StructureType(int(structureType))
        return POLICIES[structureType](self, get_structure_settings(structureType))

    def evaluate(self, event: SourceEvent) -> List[EligibilityDecision]:
        """
        Evaluate every ancestor of the event's member, up to the structure depth.

        Args:
            event: SourceEvent

        Returns:
            One decision per ancestor, ordered by level
        """
        policy = self.getPolicy(event.structureType)
        chain = self.walker.get_upline_chain(
            event.memberID,
            event.structureType,
            at=event.occurredAt,
            max_depth=policy.settings.maxLevels
        )

        if not chain:
            logger.debug(f"Event {event.eventID}: member {event.memberID} has no upline")
            return []

        # Event-level skip applies to the whole chain
        eventReason = self._eventSkipReason(event, policy)
        if eventReason:
            logger.info(f"Event {event.eventID} pays nobody: {eventReason}")
            return [
                EligibilityDecision(level=level, ancestorId=ancestorId, payable=False, reason=eventReason)
                for ancestorId, level in chain
            ]

        decisions = []
        for ancestorId, level in chain:
            try:
                frozen = policy.checkAncestor(ancestorId, level, event.occurredAt)
                decisions.append(EligibilityDecision(
                    level=level,
                    ancestorId=ancestorId,
                    payable=True,
                    frozen=frozen
                ))
            except EligibilityError as e:
                logger.debug(
                    f"Event {event.eventID}: L{level} member {ancestorId} skipped ({e.reason})"
                )
                decisions.append(EligibilityDecision(
                    level=level,
                    ancestorId=ancestorId,
                    payable=False,
                    reason=e.reason
                ))

        return decisions

    def isLevelUnlocked(
            self,
            memberId: int,
            structureType,
            level: int,
            at: Optional[datetime] = None
    ) -> bool:
        """Whether the member had the level unlocked at the moment."""
        policy = self.getPolicy(structureType)
        try:
            policy.checkUnlocked(memberId, level, at or timeMachine.now)
            return True
        except EligibilityError:
            return False

    def _eventSkipReason(self, event: SourceEvent, policy: StructurePolicy) -> Optional[str]:
        member = self.session.get(Member, event.memberID)
        if member is None:
            return NoCommissionReason.UNKNOWN.value

        if member.isMarketingFreeAccess:
            return NoCommissionReason.MARKETING_FREE_ACCESS.value

        try:
            policy.checkEvent(event)
        except EligibilityError as e:
            return e.reason

        return None

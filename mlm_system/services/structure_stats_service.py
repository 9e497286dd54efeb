# mlm_system/services/structure_stats_service.py
"""
Per-level statistics of a member's commission structure.
"""
from datetime import datetime
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy import func
import logging

from models.commission_entry import CommissionEntry, EntryStatus
from models.source_event import SourceEvent
from mlm_system.config.structures import StructureType, get_structure_settings
from mlm_system.services.activation_service import ActivationService
from mlm_system.services.eligibility_service import EligibilityService
from mlm_system.services.network_service import NetworkService
from mlm_system.services.rule_service import RuleService
from mlm_system.services.subscription_service import SubscriptionService
from mlm_system.utils.chain_walker import chunked
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

LEVEL_ACTIVE = "active"
LEVEL_FROZEN = "frozen"
LEVEL_LOCKED = "locked"

EARNED_STATUSES = (
    EntryStatus.PENDING.value,
    EntryStatus.PROCESSING.value,
    EntryStatus.COMPLETED.value,
)


class StructureStatsService:
    """Service for commission structure statistics."""

    def __init__(self, session: Session):
        self.session = session
        self.activations = ActivationService(session)
        self.eligibility = EligibilityService(session)
        self.network = NetworkService(session)
        self.rules = RuleService(session)
        self.subscriptions = SubscriptionService(session)

    def commissionStructureStats(
            self,
            userId: int,
            structureType=StructureType.SUBSCRIPTION,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None
    ) -> List[Dict]:
        """
        One row per level of the structure.

        Args:
            userId: Member
            structureType: Structure
            start: Count entries and volume from this moment
            end: ... up to (excluding) this moment

        Returns:
            Rows with level, percent, earned, frozen, volume, partners_count,
            status and unlock_requirement
        """
        structureType = StructureType(int(structureType))
        settings = get_structure_settings(structureType)
        now = timeMachine.now

        percents = self.rules.getActivePercents(structureType, now)
        nodes = self.network.resolve(userId, structureType, settings.maxLevels)
        amounts = self._amountsByLevel(userId, structureType, start, end)

        partnersByLevel: Dict[int, List[int]] = {}
        for node in nodes:
            partnersByLevel.setdefault(node.level, []).append(node.member.memberID)

        rows = []
        for level in range(1, settings.maxLevels + 1):
            partners = partnersByLevel.get(level, [])
            earned, frozen = amounts.get(level, (0, 0))
            rows.append({
                "level": level,
                "percent": str(percents[level]) if level in percents else None,
                "earned": earned,
                "frozen": frozen,
                "volume": self._volume(partners, structureType, start, end),
                "partners_count": len(partners),
                "status": self._levelStatus(userId, structureType, level, now),
                "unlock_requirement": self._unlockRequirement(settings, level),
            })

        return rows

    # ============================================================
    # INTERNAL
    # ============================================================

    def _levelStatus(self, userId: int, structureType: StructureType, level: int, now: datetime) -> str:
        if not self.eligibility.isLevelUnlocked(userId, structureType, level, now):
            return LEVEL_LOCKED

        if structureType == StructureType.SUBSCRIPTION:
            if not self.subscriptions.isSubscribedAt(userId, now):
                return LEVEL_FROZEN
        elif level > 1 and not self.activations.isActivationMet(userId, now):
            return LEVEL_FROZEN

        return LEVEL_ACTIVE

    def _unlockRequirement(self, settings, level: int) -> Optional[str]:
        requirement = settings.unlockRequirement(level)
        if requirement:
            return requirement
        if settings.structureType == StructureType.PURCHASE and level > 1:
            return f"{self.activations.getThreshold()} KZT monthly activation"
        return None

    def _amountsByLevel(self, userId: int, structureType, start, end) -> Dict[int, tuple]:
        query = self.session.query(
            CommissionEntry.level,
            CommissionEntry.status,
            func.coalesce(func.sum(CommissionEntry.amount), 0)
        ).filter(
            CommissionEntry.recipientID == userId,
            CommissionEntry.structureType == int(structureType)
        )
        if start is not None:
            query = query.filter(CommissionEntry.createdAt >= start)
        if end is not None:
            query = query.filter(CommissionEntry.createdAt < end)

        amounts: Dict[int, list] = {}
        for level, status, total in query.group_by(CommissionEntry.level, CommissionEntry.status).all():
            bucket = amounts.setdefault(level, [0, 0])
            if status in EARNED_STATUSES:
                bucket[0] += int(total)
            elif status == EntryStatus.FROZEN.value:
                bucket[1] += int(total)

        return {level: tuple(bucket) for level, bucket in amounts.items()}

    def _volume(self, memberIds: List[int], structureType, start, end) -> int:
        volume = 0
        for chunk in chunked(sorted(memberIds)):
            query = self.session.query(func.coalesce(func.sum(SourceEvent.amount), 0)).filter(
                SourceEvent.memberID.in_(chunk),
                SourceEvent.structureType == int(structureType)
            )
            if start is not None:
                query = query.filter(SourceEvent.occurredAt >= start)
            if end is not None:
                query = query.filter(SourceEvent.occurredAt < end)
            volume += int(query.scalar() or 0)
        return volume

# mlm_system/services/network_service.py
"""
Network service - resolves a member's referral tree in one structure.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Dict, Optional, Set
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.commission_entry import CommissionEntry, EntryKind
from models.no_commission_record import NoCommissionRecord
from mlm_system.config.structures import StructureType, get_structure_settings
from mlm_system.services.activation_service import ActivationService
from mlm_system.services.subscription_service import SubscriptionService
from mlm_system.utils.chain_walker import ChainWalker, chunked
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class NetworkNode:
    member: Member
    level: int
    parentId: int


class NetworkService:
    """Service for referral tree queries."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)
        self.subscriptions = SubscriptionService(session)
        self.activations = ActivationService(session)

    def resolve(
            self,
            rootId: int,
            structureType,
            maxLevels: Optional[int] = None,
            at: Optional[datetime] = None,
            strict: bool = False
    ) -> List[NetworkNode]:
        """
        Referral tree of a member, breadth-first by level, each level ordered
        by registration time.

        Args:
            rootId: Root member
            structureType: Structure to follow; parents from the other
                structure are never mixed in
            maxLevels: Depth limit (defaults to the structure depth)
            at: Resolve as of this moment (defaults to now)
            strict: Raise CycleDetected on corrupted back-pointers instead
                of skipping the repeated member

        Returns:
            List of NetworkNode, each member exactly once
        """
        structureType = StructureType(int(structureType))
        if maxLevels is None:
            maxLevels = get_structure_settings(structureType).maxLevels

        rows = self.walker.walk_downline(
            rootId, structureType, at=at, max_depth=maxLevels, strict=strict
        )
        members = self._loadMembers([memberId for memberId, _, _ in rows])

        nodes = [
            NetworkNode(member=members[memberId], level=level, parentId=parentId)
            for memberId, parentId, level in rows
            if memberId in members
        ]

        logger.debug(
            f"Resolved S{int(structureType)} network of {rootId}: "
            f"{len(nodes)} members, {maxLevels} levels"
        )
        return nodes

    def resolveNetwork(
            self,
            rootId: int,
            maxLevels: Optional[int] = None,
            structureType=StructureType.SUBSCRIPTION
    ) -> List[Dict]:
        """
        Network rows for display, enriched with subscription, activation and
        commission status relative to the root.
        """
        structureType = StructureType(int(structureType))
        nodes = self.resolve(rootId, structureType, maxLevels)
        memberIds = [node.member.memberID for node in nodes]

        received = self._commissionSources(rootId, structureType, memberIds)
        reasons = self._latestSkipReasons(rootId, structureType, memberIds)
        now = timeMachine.now

        rows = []
        for node in nodes:
            member = node.member
            hasCommission = member.memberID in received
            rows.append({
                "user_id": member.memberID,
                "partner_id": member.memberID,
                "full_name": member.fullName,
                "level": node.level,
                "parent_partner_id": node.parentId,
                "subscription_status": self.subscriptions.getStatus(member.memberID, now),
                "monthly_activation_met": self.activations.isActivationMet(member.memberID, now),
                "has_commission_received": hasCommission,
                "no_commission_reason": None if hasCommission else reasons.get(member.memberID),
                "referral_code": member.referralCode,
                "created_at": member.createdAt,
            })

        return rows

    # ============================================================
    # INTERNAL
    # ============================================================

    def _loadMembers(self, memberIds: List[int]) -> Dict[int, Member]:
        members = {}
        for chunk in chunked(sorted(set(memberIds))):
            for member in self.session.query(Member).filter(Member.memberID.in_(chunk)).all():
                members[member.memberID] = member
        return members

    def _commissionSources(self, rootId: int, structureType, memberIds: List[int]) -> Set[int]:
        """Members whose events paid the root a positive commission."""
        sources = set()
        for chunk in chunked(sorted(set(memberIds))):
            rows = self.session.query(CommissionEntry.sourceMemberID).filter(
                CommissionEntry.recipientID == rootId,
                CommissionEntry.structureType == int(structureType),
                CommissionEntry.entryKind == EntryKind.COMMISSION.value,
                CommissionEntry.sourceMemberID.in_(chunk),
                CommissionEntry.amount > 0
            ).distinct().all()
            sources.update(row[0] for row in rows)
        return sources

    def _latestSkipReasons(self, rootId: int, structureType, memberIds: List[int]) -> Dict[int, str]:
        reasons = {}
        for chunk in chunked(sorted(set(memberIds))):
            records = self.session.query(NoCommissionRecord).filter(
                NoCommissionRecord.candidateID == rootId,
                NoCommissionRecord.structureType == int(structureType),
                NoCommissionRecord.sourceMemberID.in_(chunk)
            ).order_by(NoCommissionRecord.recordID).all()
            for record in records:
                reasons[record.sourceMemberID] = record.reason
        return reasons

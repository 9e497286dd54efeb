# mlm_system/services/activation_service.py
"""
Monthly activation service.

A member is activated for a calendar month once their own product orders
in that month reach MONTHLY_ACTIVATION_REQUIRED_KZT.
"""
from datetime import datetime
from typing import Optional, Dict, List, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func
import logging

from config import Config
from models.member import Member
from models.source_event import SourceEvent, EventType
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """[start, end) of a calendar month."""
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return start, end


class ActivationService:
    """Service for monthly activation checks and reports."""

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def getThreshold() -> int:
        return int(Config.get(Config.MONTHLY_ACTIVATION_REQUIRED_KZT))

    def monthlyOrderTotal(self, memberId: int, at: Optional[datetime] = None) -> int:
        """Sum of the member's orders from the start of at's month up to at."""
        at = at or timeMachine.now
        start, _ = month_bounds(at.year, at.month)

        total = self.session.query(func.coalesce(func.sum(SourceEvent.amount), 0)).filter(
            SourceEvent.memberID == memberId,
            SourceEvent.eventType == EventType.ORDER.value,
            SourceEvent.occurredAt >= start,
            SourceEvent.occurredAt <= at
        ).scalar()
        return int(total or 0)

    def isActivationMet(self, memberId: int, at: Optional[datetime] = None) -> bool:
        return self.monthlyOrderTotal(memberId, at) >= self.getThreshold()

    def monthlyActivationReport(
            self,
            year: int,
            month: int,
            status: str = "all"
    ) -> List[Dict]:
        """
        Activation report for a calendar month.

        Args:
            year: Year
            month: Month (1-12)
            status: all, activated or not_activated

        Returns:
            Rows ordered by member name
        """
        start, end = month_bounds(year, month)
        threshold = self.getThreshold()

        totals = dict(
            (memberId, (int(total), int(count)))
            for memberId, total, count in self.session.query(
                SourceEvent.memberID,
                func.sum(SourceEvent.amount),
                func.count(SourceEvent.eventID)
            ).filter(
                SourceEvent.eventType == EventType.ORDER.value,
                SourceEvent.occurredAt >= start,
                SourceEvent.occurredAt < end
            ).group_by(SourceEvent.memberID).all()
        )

        rows = []
        members = self.session.query(Member).filter(Member.createdAt < end).order_by(
            Member.fullName, Member.memberID
        ).all()

        for member in members:
            total, count = totals.get(member.memberID, (0, 0))
            activated = total >= threshold

            if status == "activated" and not activated:
                continue
            if status == "not_activated" and activated:
                continue

            rows.append({
                "user_id": member.memberID,
                "full_name": member.fullName,
                "referral_code": member.referralCode,
                "total_amount": total,
                "threshold": threshold,
                "is_activated": activated,
                "orders_count": count,
            })

        logger.info(
            f"Activation report {year}-{month:02d}: {len(rows)} rows "
            f"(status={status}, threshold={threshold})"
        )
        return rows

# mlm_system/services/subscription_service.py
"""
Subscription status service - answers "was this member subscribed at T".
Status is derived from SubscriptionPeriod rows, never stored as a flag.
"""
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session
import logging

from models.subscription_period import SubscriptionPeriod
from mlm_system.config.structures import SUBSCRIPTION_PERIOD_DAYS
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_LAPSED = "expired"
STATUS_NONE = "none"


class SubscriptionService:
    """Point-in-time subscription queries."""

    def __init__(self, session: Session):
        self.session = session

    def isSubscribedAt(self, memberId: int, at: Optional[datetime] = None) -> bool:
        at = at or timeMachine.now
        return self.session.query(SubscriptionPeriod.periodID).filter(
            SubscriptionPeriod.memberID == memberId,
            SubscriptionPeriod.startsAt <= at,
            SubscriptionPeriod.endsAt > at
        ).first() is not None

    def hadSubscriptionBefore(self, memberId: int, at: Optional[datetime] = None) -> bool:
        """Whether any period started before the moment (lapsed or current)."""
        at = at or timeMachine.now
        return self.session.query(SubscriptionPeriod.periodID).filter(
            SubscriptionPeriod.memberID == memberId,
            SubscriptionPeriod.startsAt <= at
        ).first() is not None

    def getStatus(self, memberId: int, at: Optional[datetime] = None) -> str:
        """Status string: active, expired or none."""
        if self.isSubscribedAt(memberId, at):
            return STATUS_ACTIVE
        if self.hadSubscriptionBefore(memberId, at):
            return STATUS_LAPSED
        return STATUS_NONE

    def currentPeriodEnd(self, memberId: int, at: Optional[datetime] = None) -> Optional[datetime]:
        """End of the latest period still running at the moment."""
        at = at or timeMachine.now
        period = self.session.query(SubscriptionPeriod).filter(
            SubscriptionPeriod.memberID == memberId,
            SubscriptionPeriod.endsAt > at,
            SubscriptionPeriod.startsAt <= at
        ).order_by(SubscriptionPeriod.endsAt.desc()).first()
        return period.endsAt if period else None

    def addPeriod(
            self,
            memberId: int,
            paidAt: datetime,
            months: int = 1,
            sourceEventId: Optional[int] = None
    ) -> SubscriptionPeriod:
        """
        Append a paid period. A renewal while subscribed extends from the
        current period end, otherwise the period starts at payment time.
        """
        startsAt = self.currentPeriodEnd(memberId, paidAt) or paidAt
        period = SubscriptionPeriod(
            memberID=memberId,
            startsAt=startsAt,
            endsAt=startsAt + timedelta(days=SUBSCRIPTION_PERIOD_DAYS * months),
            sourceEventID=sourceEventId
        )
        self.session.add(period)
        self.session.flush()

        logger.info(
            f"Subscription period added for member {memberId}: "
            f"{period.startsAt} - {period.endsAt}"
        )
        return period

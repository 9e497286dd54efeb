# mlm_system/services/freeze_service.py
"""
Freeze service - releases frozen commissions and settles pending ones.
Called by the background scheduler.
"""
from datetime import datetime
from typing import Dict, Optional
from sqlalchemy.orm import Session
import logging

from models.commission_entry import CommissionEntry, EntryStatus
from mlm_system.services.subscription_service import SubscriptionService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class FreezeService:
    """Service for frozen and pending ledger entries."""

    def __init__(self, session: Session):
        self.session = session
        self.subscriptions = SubscriptionService(session)

    def releaseFrozen(self, now: Optional[datetime] = None) -> Dict:
        """
        Complete frozen entries that may be paid out.

        Timed freezes are released once frozenUntil has passed. Open-ended
        freezes (lapsed recipient) are released when the recipient is
        subscribed again.

        Returns:
            Dict with released count and amount
        """
        now = now or timeMachine.now
        released = 0
        amount = 0

        timed = self.session.query(CommissionEntry).filter(
            CommissionEntry.status == EntryStatus.FROZEN.value,
            CommissionEntry.frozenUntil.isnot(None),
            CommissionEntry.frozenUntil <= now
        ).all()

        openEnded = self.session.query(CommissionEntry).filter(
            CommissionEntry.status == EntryStatus.FROZEN.value,
            CommissionEntry.frozenUntil.is_(None)
        ).order_by(CommissionEntry.recipientID).all()

        resubscribed = {}
        for entry in openEnded:
            if entry.recipientID not in resubscribed:
                resubscribed[entry.recipientID] = self.subscriptions.isSubscribedAt(entry.recipientID, now)

        for entry in timed + [e for e in openEnded if resubscribed[e.recipientID]]:
            entry.status = EntryStatus.COMPLETED.value
            entry.releasedAt = now
            released += 1
            amount += entry.amount

        self.session.commit()

        if released:
            logger.info(f"Released {released} frozen entries, total {amount}")
        return {"released": released, "amount": amount}

    def settlePending(self, now: Optional[datetime] = None) -> Dict:
        """Complete pending entries created up to now."""
        now = now or timeMachine.now

        entries = self.session.query(CommissionEntry).filter(
            CommissionEntry.status == EntryStatus.PENDING.value,
            CommissionEntry.createdAt <= now
        ).all()

        amount = 0
        for entry in entries:
            entry.status = EntryStatus.COMPLETED.value
            entry.releasedAt = now
            amount += entry.amount

        self.session.commit()

        if entries:
            logger.info(f"Settled {len(entries)} pending entries, total {amount}")
        return {"settled": len(entries), "amount": amount}

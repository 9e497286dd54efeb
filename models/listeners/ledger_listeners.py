# models/listeners/ledger_listeners.py
"""
Ledger Event Listeners - keep CommissionEntry append-only.

Architecture:
    CommissionEntry DELETE            → IntegrityViolation
    CommissionEntry UPDATE (amount…)  → IntegrityViolation
    CommissionEntry UPDATE (status)   → only along ALLOWED_TRANSITIONS
    BalanceAdjustment UPDATE/DELETE   → IntegrityViolation

Balances are folded from these tables on every read, so a rewritten row
would silently change history. Corrections go through offsetting rows.
"""
import logging

from sqlalchemy import event, inspect, select

logger = logging.getLogger(__name__)


def register_ledger_listeners():
    """
    Register ledger protection listeners.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.commission_entry import CommissionEntry, ALLOWED_TRANSITIONS, MUTABLE_COLUMNS
    from models.balance_adjustment import BalanceAdjustment
    from mlm_system.errors import IntegrityViolation

    # =========================================================================
    # COMMISSION ENTRY
    # =========================================================================

    def guard_entry_update(mapper, connection, target):
        """Reject changes outside status/freeze columns and illegal transitions."""
        state = inspect(target)

        for attr in state.attrs:
            if attr.key in MUTABLE_COLUMNS:
                continue
            if attr.history.has_changes():
                logger.error(
                    f"Ledger rewrite blocked: entry={target.entryID}, column={attr.key}"
                )
                raise IntegrityViolation(
                    f"Commission entry {target.entryID}: column '{attr.key}' is immutable",
                    code="LEDGER_IMMUTABLE"
                )

        history = state.attrs.status.history
        if history.has_changes():
            if history.deleted:
                old_status = history.deleted[0]
            else:
                # Expired instance: old value was never loaded
                table = CommissionEntry.__table__
                old_status = connection.execute(
                    select(table.c.status).where(table.c.entryID == target.entryID)
                ).scalar()
            new_status = target.status
            allowed = ALLOWED_TRANSITIONS.get(old_status, set())
            if old_status is not None and old_status != new_status and new_status not in allowed:
                logger.error(
                    f"Illegal ledger transition blocked: entry={target.entryID}, "
                    f"{old_status} → {new_status}"
                )
                raise IntegrityViolation(
                    f"Commission entry {target.entryID}: {old_status} → {new_status} not allowed",
                    code="ILLEGAL_TRANSITION"
                )

        logger.debug(f"Ledger UPDATE ok: entry={target.entryID}, status={target.status}")

    def guard_entry_delete(mapper, connection, target):
        logger.error(f"Ledger DELETE blocked: entry={target.entryID}")
        raise IntegrityViolation(
            f"Commission entry {target.entryID} cannot be deleted; append a reversal instead",
            code="LEDGER_APPEND_ONLY"
        )

    event.listen(CommissionEntry, 'before_update', guard_entry_update)
    event.listen(CommissionEntry, 'before_delete', guard_entry_delete)

    # =========================================================================
    # BALANCE ADJUSTMENT
    # =========================================================================

    def guard_adjustment_change(mapper, connection, target):
        logger.error(f"Adjustment rewrite blocked: adjustment={target.adjustmentID}")
        raise IntegrityViolation(
            f"Balance adjustment {target.adjustmentID} is append-only",
            code="LEDGER_APPEND_ONLY"
        )

    event.listen(BalanceAdjustment, 'before_update', guard_adjustment_change)
    event.listen(BalanceAdjustment, 'before_delete', guard_adjustment_change)

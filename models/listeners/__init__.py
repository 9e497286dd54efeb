"""
SQLAlchemy Event Listeners Package.

Registers all event listeners for the application.
Import this module once during app startup to activate listeners.

Listeners:
    - ledger_listeners: keep CommissionEntry/BalanceAdjustment append-only
"""
import logging

logger = logging.getLogger(__name__)

_listeners_registered = False


def register_all_listeners():
    """
    Register all event listeners.

    Safe to call multiple times - listeners are registered only once.

    Call this from application startup, e.g.:
        from models.listeners import register_all_listeners
        register_all_listeners()
    """
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Listeners already registered, skipping")
        return

    from models.listeners.ledger_listeners import register_ledger_listeners

    register_ledger_listeners()
    logger.info("Ledger protection listeners registered (CommissionEntry, BalanceAdjustment)")

    _listeners_registered = True
    logger.info("All event listeners registered successfully")

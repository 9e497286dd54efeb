# commission_engine.py
"""
Commission Engine - Main entry point.
Initializes configuration and database, then runs the ledger scheduler.
"""
import asyncio
import logging
import signal
import sys
from datetime import datetime

from config import Config
from core.db import setup_database, get_db_session_ctx
from models.listeners import register_all_listeners
from mlm_system.services.rule_service import RuleService
from background.commission_scheduler import CommissionScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('commission_engine.log')
    ]
)

logger = logging.getLogger(__name__)

# Rules seeded on an empty database apply to all history
DEFAULT_RULES_EFFECTIVE_FROM = datetime(2000, 1, 1)


def initialize_engine() -> CommissionScheduler:
    """
    Initialize engine with all services and configurations.

    Returns:
        CommissionScheduler: Not yet started
    """
    try:
        logger.info("=" * 60)
        logger.info("COMMISSION ENGINE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logging.getLogger().setLevel(Config.get(Config.LOG_LEVEL))
        Config.validate_critical_keys()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Setup database and ledger listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Seed default commission rules
        # ═══════════════════════════════════════════════════════════════════════
        with get_db_session_ctx() as session:
            seeded = RuleService(session).seedDefaultRules(DEFAULT_RULES_EFFECTIVE_FROM)
        logger.info(f"✓ Commission rules ready ({len(seeded)} seeded)")

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return CommissionScheduler()

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    scheduler = initialize_engine()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await scheduler.start()
        await stop_event.wait()
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await scheduler.stop()
        logger.info("👋 Engine shutdown complete")


def cli():
    """Console script entry."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")


if __name__ == '__main__':
    cli()

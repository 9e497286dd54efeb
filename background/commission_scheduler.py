# background/commission_scheduler.py
"""
Commission Scheduler - handles all time-based ledger operations.
Uses APScheduler for task scheduling.
"""
import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from mlm_system.services.freeze_service import FreezeService
from mlm_system.services.reconciliation_service import ReconciliationService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class CommissionScheduler:
    """
    Background scheduler for ledger maintenance.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self):
        self.isRunning = False

        # Create APScheduler instance
        self.scheduler = AsyncIOScheduler(
            timezone=Config.get(Config.SCHEDULER_TIMEZONE),
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        # Statistics
        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "entriesReleased": 0,
            "entriesSettled": 0,
            "lastBackfill": None
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Release frozen entries: every 1 hour
        - Settle pending entries: every day at 00:30
        - Backfill: every day at 03:00 (dry run unless NIGHTLY_BACKFILL_APPLY)
        """
        if self.isRunning:
            logger.warning("Commission Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Commission Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Release frozen entries (every 1 hour)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_job_wrapper,
            args=[self.releaseFrozen],
            trigger=IntervalTrigger(hours=1),
            id='release_frozen',
            name='Release Frozen Commissions',
            replace_existing=True
        )
        logger.info("✓ Job registered: Release Frozen (every 1 hour)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Settle pending entries (every day at 00:30)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_job_wrapper,
            args=[self.settlePending],
            trigger=CronTrigger(hour=0, minute=30),
            id='settle_pending',
            name='Settle Pending Commissions (00:30)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Settle Pending (00:30)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Nightly backfill (every day at 03:00)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_job_wrapper,
            args=[self.nightlyBackfill],
            trigger=CronTrigger(hour=3, minute=0),
            id='nightly_backfill',
            name='Nightly Backfill (03:00)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Nightly Backfill (03:00)")

        # Start the scheduler
        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Commission Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Commission Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Commission Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPER (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_job_wrapper(self, job):
        try:
            await job()
            self.stats["tasksExecuted"] += 1
            self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        except Exception as e:
            logger.error(f"Error in {job.__name__} job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def releaseFrozen(self):
        """Release frozen entries whose hold has ended."""
        with get_db_session_ctx() as session:
            result = FreezeService(session).releaseFrozen(timeMachine.now)
        self.stats["entriesReleased"] += result["released"]

    async def settlePending(self):
        """Complete pending entries."""
        with get_db_session_ctx() as session:
            result = FreezeService(session).settlePending(timeMachine.now)
        self.stats["entriesSettled"] += result["settled"]

    async def nightlyBackfill(self):
        """
        Reconcile the whole ledger.

        Reports only, unless NIGHTLY_BACKFILL_APPLY is set. Needs
        SYSTEM_ADMIN_ID to name the admin the entries are created under.
        """
        adminId = Config.get(Config.SYSTEM_ADMIN_ID)
        if adminId is None:
            logger.warning("Nightly backfill skipped: SYSTEM_ADMIN_ID is not configured")
            return

        apply = bool(Config.get(Config.NIGHTLY_BACKFILL_APPLY))
        with get_db_session_ctx() as session:
            result = ReconciliationService(session).backfillCommissions(adminId, dryRun=not apply)

        self.stats["lastBackfill"] = {
            "at": datetime.now(timezone.utc),
            "dry_run": result["dry_run"],
            "created": result["commissions_created"],
            "total": result["total_amount"],
            "errors": len(result["errors"]),
        }

        if result["commissions_created"] and result["dry_run"]:
            logger.warning(
                f"Nightly backfill found {result['commissions_created']} missing commissions "
                f"({result['total_amount']} KZT); run scripts/backfill.py --apply to create them"
            )

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine.isTestMode,
            "stats": self.stats,
            "jobs": jobs_info
        }

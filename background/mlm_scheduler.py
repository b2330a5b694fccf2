# background/mlm_scheduler.py
"""
MLM Scheduler - drives periodic commission runs and payouts.
Uses APScheduler for professional task scheduling.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Callable
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Config
from core.db import get_db_session_ctx
from mlm_system.errors import IdempotencyConflict
from mlm_system.services.commission_run_service import CommissionRunService
from mlm_system.services.payout_service import PayoutService
from mlm_system.utils.periods import previous_period_key
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class MLMScheduler:
    """
    Background scheduler for commission runs.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self, sessionContext: Optional[Callable] = None):
        """
        Initialize scheduler.

        Args:
            sessionContext: Factory returning a session context manager
                            (defaults to core.db.get_db_session_ctx)
        """
        self.sessionContext = sessionContext or get_db_session_ctx
        self.isRunning = False

        # Create APScheduler instance
        self.scheduler = AsyncIOScheduler(
            timezone=Config.get(Config.SCHEDULER_TIMEZONE, 'UTC'),
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
            "skippedRuns": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "lastRun": None,
            "lastPayouts": None
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Weekly run: every Monday 00:05 UTC, for the ISO week that just closed
        - Monthly run: 1st of the month 00:05 UTC, for the previous month
        - Payouts: every day at 10:00 (SCHEDULER_TIMEZONE)

        Period windows are naive UTC, so the run triggers are pinned to UTC
        whatever timezone the scheduler uses for the other jobs.
        """
        if self.isRunning:
            logger.warning("MLM Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting MLM Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Weekly commission run (Monday 00:05 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_weekly_run_wrapper,
            trigger=CronTrigger(day_of_week='mon', hour=0, minute=5, timezone='UTC'),
            id='weekly_run',
            name='Weekly Commission Run',
            replace_existing=True
        )
        logger.info("✓ Job registered: Weekly Commission Run (Mon 00:05 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Monthly commission run (1st 00:05 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_monthly_run_wrapper,
            trigger=CronTrigger(day=1, hour=0, minute=5, timezone='UTC'),
            id='monthly_run',
            name='Monthly Commission Run',
            replace_existing=True
        )
        logger.info("✓ Job registered: Monthly Commission Run (1st 00:05 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Payouts (every day at 10:00)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_payouts_wrapper,
            trigger=CronTrigger(hour=10, minute=0, timezone=self.scheduler.timezone),
            id='payouts',
            name='Payout Processing (10:00)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Payout Processing (10:00)")

        # Start the scheduler
        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ MLM Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping MLM Scheduler...")
        self.isRunning = False

        # Shutdown scheduler
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ MLM Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_weekly_run_wrapper(self):
        """Safe wrapper for the weekly run."""
        try:
            await self.executeRun("weekly")
        except Exception as e:
            logger.error(f"Error in weekly run job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_monthly_run_wrapper(self):
        """Safe wrapper for the monthly run."""
        try:
            await self.executeRun("monthly")
        except Exception as e:
            logger.error(f"Error in monthly run job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_payouts_wrapper(self):
        """Safe wrapper for payout processing."""
        try:
            await self.executePayouts()
        except Exception as e:
            logger.error(f"Error in payouts job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # TASKS
    # ═══════════════════════════════════════════════════════════════════

    async def executeRun(self, runType: str, periodKey: Optional[str] = None):
        """
        Run commissions for the last closed period (or periodKey).
        An already-completed period is logged and skipped.

        Returns:
            Run summary dict, or None when the period was already run
        """
        periodKey = periodKey or previous_period_key(runType, timeMachine.now)
        logger.info(f"Executing {runType} commission run for {periodKey}")

        try:
            with self.sessionContext() as session:
                service = CommissionRunService(session)
                run = await service.runPeriod(runType, periodKey)
                summary = {
                    "runId": run.runID,
                    "runType": runType,
                    "periodKey": run.periodKey,
                    "status": run.status,
                    "totalCommissions": str(run.totalCommissions),
                }

        except IdempotencyConflict as e:
            logger.warning(f"Skipping {runType} run for {periodKey}: {e}")
            self.stats["skippedRuns"] += 1
            return None

        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastRun"] = summary

        return summary

    async def executePayouts(self):
        """Create payouts for released commissions."""
        logger.info(f"Executing payout processing for {timeMachine.now.date()}")

        with self.sessionContext() as session:
            result = await PayoutService(session).processPayouts()

        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastPayouts"] = {
            "payouts": result["payouts"],
            "totalPaid": str(result["totalPaid"]),
        }

        return result

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


# Global scheduler instance (created in mlm_engine.py)
scheduler: Optional[MLMScheduler] = None

"""
Escrow Background Scheduler

Runs the ledger reconciler on a fixed interval. Job defaults forbid overlapping runs
(max_instances=1) and collapse missed runs into one (coalesce=True).
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.ledger_reconciler import LedgerReconciler, ReconciliationResult

logger = logging.getLogger(__name__)

RECONCILER_JOB_ID = "ledger_reconciler"


class EscrowScheduler:
    """Owns the APScheduler instance for the reconciliation loop"""

    def __init__(self, reconciler: LedgerReconciler, interval_seconds: Optional[int] = None):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or Config.RECONCILE_INTERVAL_SECONDS

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Prevent job pileup
                'max_instances': 1,  # Never two reconciliation cycles at once
                'misfire_grace_time': self.interval_seconds,
            },
            timezone='UTC'
        )

    async def _run_reconciliation(self) -> ReconciliationResult:
        try:
            return await self.reconciler.run_cycle()
        except Exception as e:
            # Keep the job scheduled; the next cycle retries
            logger.error(f"❌ RECONCILE_CYCLE_FAILED: {e}", exc_info=True)
            raise

    def setup_jobs(self):
        self.scheduler.add_job(
            self._run_reconciliation,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=RECONCILER_JOB_ID,
            name="🔁 Ledger Reconciler - deposits, completions, reminders",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=1),
            replace_existing=True
        )
        logger.info(f"✅ Ledger Reconciler scheduled every {self.interval_seconds} seconds")

    def start(self):
        """Start the scheduler; must be called from inside a running event loop"""
        if self.scheduler.running:
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Escrow scheduler started")

    async def stop(self, wait: bool = False):
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        # AsyncIOScheduler finishes shutting down on the next loop iteration
        while self.scheduler.running:
            await asyncio.sleep(0)
        logger.info("🛑 Escrow scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def run_now(self) -> ReconciliationResult:
        """Manual trigger; skipped by the reconciler if a cycle is already running"""
        return await self.reconciler.run_cycle()

"""
Reconciliation Scheduler

Background job that sweeps orphaned brokerage connections (the user's
credential is gone) and reports stale ones on a fixed interval.

Architecture:
- Uses APScheduler for reliable job scheduling
- One run at a time; missed runs are coalesced
- Stale connections are logged, never deleted
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from utils.portfolio.constants import RECONCILIATION_INTERVAL_HOURS

from services.connection_reconciliation_service import (
    ConnectionReconciliationService, get_connection_reconciliation_service,
)

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Manages the scheduled orphan cleanup job."""

    def __init__(self, service: Optional[ConnectionReconciliationService] = None,
                 interval_hours: int = RECONCILIATION_INTERVAL_HOURS):
        self.scheduler = AsyncIOScheduler()
        self.service = service or get_connection_reconciliation_service()
        self.interval_hours = interval_hours
        self._is_running = False
        self.last_result: Optional[Dict[str, Any]] = None

    def start(self):
        """Start the scheduler with the cleanup job."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        logger.info(f"🚀 Starting Reconciliation Scheduler (every {self.interval_hours} hour(s))")
        self.scheduler.add_job(
            self.run_cleanup,
            IntervalTrigger(hours=self.interval_hours),
            id='orphaned_connection_cleanup',
            name='Orphaned Connection Cleanup',
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,  # Combine missed runs into one
        )
        self.scheduler.start()
        self._is_running = True
        logger.info("✅ Reconciliation Scheduler started")

    def stop(self):
        """Stop the scheduler gracefully."""
        if not self._is_running:
            return

        logger.info("🛑 Stopping Reconciliation Scheduler...")
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("✅ Reconciliation Scheduler stopped")

    async def run_cleanup(self) -> Dict[str, Any]:
        """Job body; the store work is synchronous so it runs in a worker thread."""
        started = datetime.now(timezone.utc)
        logger.info(f"🧹 Starting orphaned connection cleanup at {started.isoformat()}")
        try:
            result = await asyncio.to_thread(self.service.run_orphan_cleanup)
        except Exception as e:
            logger.error(f"❌ Orphaned connection cleanup failed: {e}", exc_info=True)
            raise
        result['started_at'] = started.isoformat()
        self.last_result = result
        return result

    def get_status(self) -> Dict[str, Any]:
        jobs = self.scheduler.get_jobs() if self._is_running else []
        return {
            'is_running': self._is_running,
            'jobs': [
                {
                    'id': job.id,
                    'name': job.name,
                    'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                    'trigger': str(job.trigger)
                }
                for job in jobs
            ],
            'config': {'interval_hours': self.interval_hours},
            'last_result': self.last_result,
        }


# Global scheduler instance
_scheduler: Optional[ReconciliationScheduler] = None


def get_reconciliation_scheduler() -> ReconciliationScheduler:
    """Get the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ReconciliationScheduler()
    return _scheduler


def start_reconciliation_scheduler() -> ReconciliationScheduler:
    """Start the global scheduler."""
    scheduler = get_reconciliation_scheduler()
    scheduler.start()
    return scheduler


def stop_reconciliation_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None

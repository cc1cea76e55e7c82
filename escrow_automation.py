"""
Escrow Automation Module

Background jobs for the escrow service:
- Stale transaction sweep: callbacks are not delivery-guaranteed, so every
  pending/processing transaction older than COLLECTION_TIMEOUT_SECONDS is
  settled through a provider status query.
- Auto release: shipped or delivered orders with no dispute after
  AUTO_RELEASE_DAYS are completed and the seller is paid.

Dependencies:
    - APScheduler: For background job scheduling
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class EscrowAutomation:
    """
    Scheduler for reconciliation jobs.

    Attributes:
        engine: Reconciliation engine used by the sweep
        config: Job intervals and the auto release window
        scheduler: APScheduler instance running on the service event loop
    """

    def __init__(self, engine: ReconciliationEngine, config: Config):
        self.engine = engine
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

        # Statistics
        self.stats = {
            'sweeps': 0,
            'checked': 0,
            'finalized': 0,
            'abandoned': 0,
            'auto_releases': 0,
            'errors': 0,
            'last_run': {}
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = datetime.now()

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        # Stale transaction sweep - every RECONCILE_INTERVAL_SECONDS
        self.scheduler.add_job(
            self.reconcile_stale_transactions,
            trigger=IntervalTrigger(seconds=self.config.reconcile_interval),
            id='reconcile_stale_transactions',
            name='Reconcile Stale Transactions',
            max_instances=1,
            misfire_grace_time=300
        )

        # Auto release - every AUTO_RELEASE_INTERVAL_SECONDS, off when AUTO_RELEASE_DAYS is 0
        if self.config.auto_release_days > 0:
            self.scheduler.add_job(
                self.auto_release_payments,
                trigger=IntervalTrigger(seconds=self.config.auto_release_interval),
                id='auto_release_payments',
                name='Auto Release Payments',
                max_instances=1,
                misfire_grace_time=300
            )

        logger.info("All automation tasks scheduled")

    async def reconcile_stale_transactions(self) -> Optional[Dict[str, int]]:
        """
        Query providers for transactions that never got a callback.

        Errors are logged; the job keeps running on its next interval.
        """
        logger.info("Running stale transaction sweep...")
        try:
            summary = await self.engine.reconcile_stale()
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"Stale transaction sweep failed: {e}", exc_info=True)
            return None

        self.stats['sweeps'] += 1
        for key in ('checked', 'finalized', 'abandoned', 'errors'):
            self.stats[key] += summary.get(key, 0)
        self.stats['last_run']['reconcile_stale_transactions'] = datetime.now()

        logger.info(
            f"Stale transaction sweep complete: {summary['checked']} checked, "
            f"{summary['finalized']} finalized, {summary['abandoned']} abandoned"
        )
        return summary

    async def auto_release_payments(self) -> Optional[Dict[str, int]]:
        """
        Complete orders left undisputed for AUTO_RELEASE_DAYS and pay the sellers.

        Errors are logged; the job keeps running on its next interval.
        """
        logger.info("Running auto release...")
        try:
            summary = await self.engine.release_matured_orders()
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"Auto release failed: {e}", exc_info=True)
            return None

        self.stats['auto_releases'] += summary.get('released', 0)
        self.stats['errors'] += summary.get('errors', 0)
        self.stats['last_run']['auto_release_payments'] = datetime.now()

        if summary['released']:
            logger.info(
                f"Auto release complete: {summary['released']} released, "
                f"{summary['payout_failed']} payouts need manual handling"
            )
        return summary

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
            'uptime': (datetime.now() - self.stats.get('start_time', datetime.now())).total_seconds()
        }

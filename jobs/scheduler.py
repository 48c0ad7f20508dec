"""Background job scheduler for the Handshake indexer"""

import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobs.pending_transfer_sweep import schedule_pending_sweep

logger = logging.getLogger(__name__)


class IndexerScheduler:
    """Owns the AsyncIOScheduler and the jobs registered on it"""

    def __init__(self, ctx):
        self.ctx = ctx
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Global coalescing to prevent job pileup
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    def setup_jobs(self):
        schedule_pending_sweep(self.scheduler, self.ctx)

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"⏰ Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("⏰ Scheduler stopped")

"""
Escrow Background Job Scheduler

Two interval jobs:
1. Release Sweep - auto-release overdue holds, retry failed dispute settlements
2. Stuck Release Recovery - confirm or roll back holds stuck in releasing

Several instances may run this scheduler at once; correctness rests on the
hold compare-and-set, not on the scheduler being a singleton.
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from jobs.release_sweep import run_release_sweep, run_stuck_release_recovery

logger = logging.getLogger(__name__)


class EscrowScheduler:
    """Owns the APScheduler instance for escrow jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the sweep and recovery jobs"""
        start = datetime.now(timezone.utc) + timedelta(seconds=10)

        self.scheduler.add_job(
            run_release_sweep,
            trigger=IntervalTrigger(minutes=Config.RELEASE_SWEEP_INTERVAL_MINUTES, start_date=start),
            id="escrow_release_sweep",
            name="⏰ Escrow Release Sweep",
            replace_existing=True
        )
        logger.info(f"✅ Release sweep scheduled every {Config.RELEASE_SWEEP_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            run_stuck_release_recovery,
            trigger=IntervalTrigger(
                minutes=Config.RECOVERY_SWEEP_INTERVAL_MINUTES,
                start_date=start + timedelta(seconds=30),
            ),
            id="escrow_stuck_release_recovery",
            name="🩺 Stuck Release Recovery",
            replace_existing=True
        )
        logger.info(
            f"✅ Stuck release recovery scheduled every {Config.RECOVERY_SWEEP_INTERVAL_MINUTES} minutes "
            f"(grace {Config.RELEASING_GRACE_MINUTES} min)"
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 Escrow scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("🛑 Escrow scheduler stopped")

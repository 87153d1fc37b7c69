"""Periodic and one-shot execution of the treasury loops."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from walletadapter import jobs
from walletadapter.context import TreasuryContext
from walletadapter.runner import JobRunner

__all__ = ["JobRunner", "TreasuryScheduler"]

logger = logging.getLogger(__name__)


class TreasuryScheduler:
    """Cron schedule for the treasury loops."""

    def __init__(self, context: TreasuryContext, runner: Optional[JobRunner] = None):
        self.context = context
        self.runner = runner or JobRunner()
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        settings = self.context.settings

        self.scheduler.add_job(
            jobs.run_float_manager,
            trigger=CronTrigger.from_crontab(settings.float_cron_interval, timezone="UTC"),
            args=[self.context],
            id="float_manager",
            name="Float Manager",
        )
        self.scheduler.add_job(
            jobs.run_sweeper,
            trigger=CronTrigger.from_crontab(settings.sweep_cron_interval, timezone="UTC"),
            args=[self.context],
            id="sweeper",
            name="Sweeper",
        )
        self.scheduler.add_job(
            jobs.run_withdrawal_dispatcher,
            trigger=CronTrigger.from_crontab(
                settings.process_transaction_cron_interval, timezone="UTC"
            ),
            args=[self.context, self.runner],
            id="withdrawal_dispatcher",
            name="Withdrawal Dispatcher",
        )
        self.scheduler.add_job(
            jobs.run_batch_processor,
            trigger=CronTrigger.from_crontab(settings.process_batch_cron_interval, timezone="UTC"),
            args=[self.context, self.runner],
            id="batch_processor",
            name="Batch Processor",
        )
        self.scheduler.add_job(
            jobs.purge_auth_cache,
            trigger=IntervalTrigger(seconds=settings.purge_cache_interval),
            args=[self.context],
            id="purge_auth_cache",
            name="Purge Auth Token Cache",
        )

        logger.info(f"Scheduled {len(self.scheduler.get_jobs())} treasury jobs")

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Treasury scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Treasury scheduler stopped")

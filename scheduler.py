import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from dashboard import DashboardOrchestrator

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, dashboard: DashboardOrchestrator, interval_minutes: Optional[int] = None) -> None:
        settings = get_settings()
        self.dashboard = dashboard
        self.interval_minutes = (
            settings.config_refresh_minutes if interval_minutes is None else interval_minutes
        )
        self.scheduler = AsyncIOScheduler(timezone=settings.timezone)

    async def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        config = await self.dashboard.refresh_category_orders()
        logger.info(f"scheduler_run: source={source} categories={len(config)}")

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info("Scheduler disabled (config refresh interval is 0)")
            return

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="category_config_refresh",
            replace_existing=True,
            misfire_grace_time=300,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {self.interval_minutes} minute config refresh")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.orm import sessionmaker

from database import session_scope
from services import rollover_all_due


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Server-side catch-up for plans whose period has ended.

    Plans end at local midnight in their own time zone, so the job runs a
    few seconds past every UTC hour rather than once a day.
    """

    JOB_ID = "rollover_hourly"

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            count = rollover_all_due(session)
        logger.info(f"scheduler_run: source={source} plans_rolled={count}")
        return count

    def start(self) -> None:
        self.run_job("startup")
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(minute=0, second=5),
            args=["hourly"],
            id=self.JOB_ID,
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=900,
        )
        self.scheduler.start()
        logger.info("Scheduler started with hourly plan rollover")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


class RolloverTimer:
    """One-shot job on the running event loop; arming again replaces it."""

    JOB_ID = "plan_rollover_timer"

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    @property
    def armed(self) -> bool:
        return self.scheduler.get_job(self.JOB_ID) is not None

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def arm(self, run_at: datetime, callback: Callable[[], Awaitable[None]]) -> None:
        self.start()
        self.scheduler.add_job(
            callback,
            DateTrigger(run_date=run_at),
            id=self.JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )

    def disarm(self) -> None:
        if self.armed:
            self.scheduler.remove_job(self.JOB_ID)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

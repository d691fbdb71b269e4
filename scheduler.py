import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import ReconciliationService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def rematch_transactions(service: ReconciliationService) -> int:
    return service.rematch_all()


def nightly_maintenance(service: ReconciliationService) -> int:
    fixed = service.recalculate_all_periods()
    logger.info(f"periods_maintenance: rows_updated={fixed}")
    return service.rematch_all()


class SchedulerManager:
    """Background reconciliation for transactions that bypassed the webhook.

    Every job is idempotent: matching is at-most-once per transaction and
    due dates only move forward, so overlapping or repeated runs are safe.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.interval_minutes = settings.reconcile_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(
        self,
        source: str = "manual",
        job: Callable[[ReconciliationService], int] = rematch_transactions,
    ) -> int:
        logger.info(f"reconcile_job: source={source} job={job.__name__}")
        with session_scope() as session:
            created = job(ReconciliationService(session))
        logger.info(f"reconcile_job: source={source} matches_created={created}")
        return created

    def start(self) -> None:
        self._run_job("startup")

        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=3, minute=15),
            args=["nightly", nightly_maintenance],
            id="reconcile_nightly",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            IntervalTrigger(minutes=self.interval_minutes),
            args=["interval"],
            id="reconcile_interval",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"scheduler_started: nightly=03:15 interval_minutes={self.interval_minutes}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Settings, get_settings
from database import SessionFactory, SessionLocal, session_scope
from recurrence import MaterializationScheduler, RunReport
from report_queue import DatabaseReportQueue
from services import MonthlyReportRun, ReportService


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.materializer = MaterializationScheduler(
            session_factory, settings=self.settings
        )
        self.queue = DatabaseReportQueue(session_factory)

    def run_materialization(self, source: str = "manual") -> RunReport:
        logger.info(f"scheduler_run: source={source}")
        report = self.materializer.run_tick()
        logger.info(
            f"scheduler_run: source={source} occurrences_posted={report.materialized} "
            f"errored={report.errored}"
        )
        return report

    def run_monthly_reports(self, source: str = "manual") -> MonthlyReportRun:
        logger.info(f"monthly_reports_run: source={source}")
        with session_scope(self.session_factory) as session:
            return ReportService(session, self.queue, self.settings).enqueue_monthly_reports()

    def start(self) -> None:
        if self.settings.run_on_startup:
            self.run_materialization("startup")

        trigger = CronTrigger(
            hour=self.settings.daily_tick_hour, minute=self.settings.daily_tick_minute
        )
        self.scheduler.add_job(
            self.run_materialization,
            trigger,
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(day=1, hour=0, minute=0)
        self.scheduler.add_job(
            self.run_monthly_reports,
            trigger,
            args=["monthly"],
            id="reports_monthly",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: daily tick {self.settings.daily_tick_hour:02d}:"
            f"{self.settings.daily_tick_minute:02d} {self.settings.timezone}, "
            "monthly reports on the 1st at 00:00"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

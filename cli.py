import logging
import signal
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import typer

from config import get_settings
from database import Base, SessionLocal, engine, session_scope
from periods import resolve_period
from recurrence import MaterializationScheduler
from report_queue import DatabaseReportQueue, ReportWorker, log_report_delivery
from schemas import ReportFormat
from services import ReportService, get_current_user_id


app = typer.Typer(help="Recurring expenses and report dispatch.")


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command("init-db")
def init_db() -> None:
    """Create missing tables (development databases; use Alembic elsewhere)."""
    _configure_logging()
    Base.metadata.create_all(engine)
    typer.echo("Database ready.")


@app.command("worker")
def worker(
    concurrency: int = typer.Option(1, min=1, help="Parallel consumer threads"),
    once: bool = typer.Option(False, help="Drain available messages and exit"),
) -> None:
    """Consume report jobs from the queue."""
    _configure_logging()
    queue = DatabaseReportQueue(SessionLocal)
    queue.subscribe(log_report_delivery)
    consumer = ReportWorker(queue, concurrency=concurrency)
    if once:
        handled = 0
        while True:
            batch = consumer.run_once()
            handled += batch
            if not batch:
                break
        typer.echo(f"Handled {handled} report job(s).")
        return

    def _stop(_signum, _frame) -> None:
        consumer.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    consumer.run_forever()


@app.command("tick")
def tick(
    now: Optional[datetime] = typer.Option(
        None, help="Evaluate as of this instant (UTC unless an offset is given)"
    ),
) -> None:
    """Run one materialization tick."""
    _configure_logging()
    report = MaterializationScheduler(SessionLocal).run_tick(now)
    for item in report.outcomes:
        detail = f" ({item.detail})" if item.detail else ""
        typer.echo(f"{item.definition_id}: {item.outcome.value}{detail}")
    if report.errored:
        raise typer.Exit(code=1)


@app.command("monthly-reports")
def monthly_reports(
    today: Optional[datetime] = typer.Option(
        None, formats=["%Y-%m-%d"], help="Pretend today is this date"
    ),
) -> None:
    """Queue last month's report for every owner."""
    _configure_logging()
    queue = DatabaseReportQueue(SessionLocal)
    with session_scope() as session:
        run = ReportService(session, queue).enqueue_monthly_reports(
            today.date() if today else None
        )
    typer.echo(f"Queued {len(run.queued)} report(s), {len(run.failed)} failed.")
    if run.failed:
        raise typer.Exit(code=1)


@app.command("request-report")
def request_report(
    period: str = typer.Option("last_month", help="this_month|last_month|custom"),
    start: Optional[str] = typer.Option(None, help="Start date for custom periods"),
    end: Optional[str] = typer.Option(None, help="End date for custom periods"),
    user_id: Optional[int] = typer.Option(None, help="Owner id"),
    format: ReportFormat = typer.Option(ReportFormat.pdf, help="Report format"),
) -> None:
    """Queue a report for one owner, as the on-demand endpoint does."""
    _configure_logging()
    try:
        today = datetime.now(ZoneInfo(get_settings().timezone)).date()
        resolved = resolve_period(period, start, end, today=today)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    queue = DatabaseReportQueue(SessionLocal)
    with session_scope() as session:
        ack = ReportService(session, queue).request_report(
            user_id or get_current_user_id(), resolved.start, resolved.end, format
        )
    typer.echo(ack.message)


@app.command("settings")
def show_settings() -> None:
    """Print the effective configuration."""
    settings = get_settings()
    for key, value in sorted(vars(settings).items()):
        typer.echo(f"{key}={value}")


if __name__ == "__main__":
    app()

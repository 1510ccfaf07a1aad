import os
from functools import lru_cache
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        scheduler_enabled: bool = True,
        run_on_startup: bool = True,
        daily_tick_hour: int = 0,
        daily_tick_minute: int = 0,
        scheduler_workers: int = 4,
        tick_deadline_secs: float = 300.0,
        definition_timeout_secs: float = 30.0,
        category_fuzzy_distance: int = 0,
        report_queue_name: str = "reports_queue",
        report_format: str = "pdf",
        queue_lease_secs: float = 300.0,
        worker_poll_secs: float = 2.0,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.run_on_startup = run_on_startup
        self.daily_tick_hour = daily_tick_hour
        self.daily_tick_minute = daily_tick_minute
        self.scheduler_workers = scheduler_workers
        self.tick_deadline_secs = tick_deadline_secs
        self.definition_timeout_secs = definition_timeout_secs
        self.category_fuzzy_distance = category_fuzzy_distance
        self.report_queue_name = report_queue_name
        self.report_format = report_format
        self.queue_lease_secs = queue_lease_secs
        self.worker_poll_secs = worker_poll_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    # Calendar-date dueness and report periods are evaluated in this zone.
    timezone = os.getenv("EXPENSES_TIMEZONE", "UTC")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        scheduler_enabled=_env_bool("EXPENSES_SCHEDULER_ENABLED", True),
        run_on_startup=_env_bool("EXPENSES_RUN_ON_STARTUP", True),
        daily_tick_hour=int(os.getenv("EXPENSES_DAILY_TICK_HOUR", "0")),
        daily_tick_minute=int(os.getenv("EXPENSES_DAILY_TICK_MINUTE", "0")),
        scheduler_workers=int(os.getenv("EXPENSES_SCHEDULER_WORKERS", "4")),
        tick_deadline_secs=float(os.getenv("EXPENSES_TICK_DEADLINE_SECS", "300")),
        definition_timeout_secs=float(
            os.getenv("EXPENSES_DEFINITION_TIMEOUT_SECS", "30")
        ),
        category_fuzzy_distance=int(
            os.getenv("EXPENSES_CATEGORY_FUZZY_DISTANCE", "0")
        ),
        report_queue_name=os.getenv("EXPENSES_REPORT_QUEUE", "reports_queue"),
        report_format=os.getenv("EXPENSES_REPORT_FORMAT", "pdf"),
        queue_lease_secs=float(os.getenv("EXPENSES_QUEUE_LEASE_SECS", "300")),
        worker_poll_secs=float(os.getenv("EXPENSES_WORKER_POLL_SECS", "2")),
    )

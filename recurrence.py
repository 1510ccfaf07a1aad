import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import SessionFactory, as_utc, session_scope, to_storage
from models import Expense, InvariantViolation, RecurringExpense, RecurringInterval
from services import CategoryService, LedgerStore, RecurringExpenseStore


logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)


def is_due(
    interval: RecurringInterval,
    watermark: datetime,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> bool:
    """Whether a recurring expense last materialized at ``watermark`` is due.

    Naive datetimes are taken as UTC. Calendar comparisons (daily, monthly)
    use the calendar of ``tz``.
    """
    watermark = as_utc(watermark)
    now = as_utc(now)
    if now <= watermark:
        return False
    if interval == RecurringInterval.daily:
        return now.astimezone(tz).date() > watermark.astimezone(tz).date()
    if interval == RecurringInterval.weekly:
        return (now - watermark) // WEEK >= 1
    if interval == RecurringInterval.monthly:
        now_local = now.astimezone(tz)
        mark_local = watermark.astimezone(tz)
        return (now_local.year, now_local.month) > (mark_local.year, mark_local.month)
    raise ValueError(f"Unknown recurring interval: {interval}")


class Outcome(str, Enum):
    materialized = "materialized"
    skipped = "skipped"
    errored = "errored"
    deferred = "deferred"


@dataclass(frozen=True)
class DefinitionOutcome:
    definition_id: int
    outcome: Outcome
    entry_id: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class RunReport:
    now: datetime
    outcomes: list[DefinitionOutcome] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)

    def outcome_for(self, definition_id: int) -> Optional[DefinitionOutcome]:
        for item in self.outcomes:
            if item.definition_id == definition_id:
                return item
        return None

    @property
    def materialized(self) -> int:
        return self.count(Outcome.materialized)

    @property
    def errored(self) -> int:
        return self.count(Outcome.errored)

    def summary(self) -> dict[str, object]:
        return {
            "now": self.now.isoformat(),
            **{outcome.value: self.count(outcome) for outcome in Outcome},
        }


class MaterializationTimeout(TimeoutError):
    pass


class _WatermarkMoved(Exception):
    pass


class MaterializationScheduler:
    """Turns due recurring expenses into ledger entries, one tick at a time.

    Only one tick runs at a time per instance; a second caller waits for the
    first to finish. Within a tick, recurring expenses are processed on a
    bounded thread pool, each in its own transaction, and never two at once
    for the same id.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver_factory: Callable[[Session], CategoryService] = CategoryService,
        ledger_factory: Callable[[Session], LedgerStore] = LedgerStore,
        store_factory: Callable[[Session], RecurringExpenseStore] = RecurringExpenseStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.resolver_factory = resolver_factory
        self.ledger_factory = ledger_factory
        self.store_factory = store_factory
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.timezone)
        self._tick_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._definition_locks: dict[int, threading.Lock] = {}

    def _lock_for(self, definition_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._definition_locks.get(definition_id)
            if lock is None:
                lock = threading.Lock()
                self._definition_locks[definition_id] = lock
            return lock

    def run_tick(self, now: Optional[datetime] = None) -> RunReport:
        now = as_utc(now or datetime.now(timezone.utc))
        with self._tick_lock:
            report = self._run(now)
        logger.info(
            f"materialize_tick: now={now.isoformat()} "
            f"materialized={report.count(Outcome.materialized)} "
            f"skipped={report.count(Outcome.skipped)} "
            f"errored={report.count(Outcome.errored)} "
            f"deferred={report.count(Outcome.deferred)}"
        )
        return report

    def _run(self, now: datetime) -> RunReport:
        deadline = time.monotonic() + self.settings.tick_deadline_secs
        today = now.astimezone(self.tz).date()
        with session_scope(self.session_factory) as session:
            definition_ids = [
                definition.id
                for definition in self.store_factory(session).list_eligible(today)
            ]

        report = RunReport(now=now)
        if not definition_ids:
            return report

        pool = ThreadPoolExecutor(
            max_workers=max(1, self.settings.scheduler_workers),
            thread_name_prefix="materialize",
        )
        futures = {
            pool.submit(self._process_guarded, definition_id, now, deadline): definition_id
            for definition_id in definition_ids
        }
        done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
        # Stragglers may still commit after we return; the watermark
        # compare-and-set keeps a later tick from repeating their work.
        pool.shutdown(wait=False, cancel_futures=True)

        for future in done:
            report.outcomes.append(future.result())
        for future in not_done:
            definition_id = futures[future]
            logger.warning(f"materialize_deferred: definition_id={definition_id}")
            report.outcomes.append(
                DefinitionOutcome(
                    definition_id, Outcome.deferred, detail="tick deadline reached"
                )
            )
        report.outcomes.sort(key=lambda item: item.definition_id)
        return report

    def _process_guarded(
        self, definition_id: int, now: datetime, deadline: float
    ) -> DefinitionOutcome:
        if time.monotonic() >= deadline:
            return DefinitionOutcome(
                definition_id, Outcome.deferred, detail="tick deadline reached"
            )
        try:
            with self._lock_for(definition_id):
                return self._process(definition_id, now)
        except _WatermarkMoved:
            logger.warning(f"materialize_claimed_elsewhere: definition_id={definition_id}")
            return DefinitionOutcome(
                definition_id, Outcome.skipped, detail="watermark moved"
            )
        except Exception as exc:
            logger.exception(f"materialize_failed: definition_id={definition_id}")
            return DefinitionOutcome(
                definition_id, Outcome.errored, detail=f"{type(exc).__name__}: {exc}"
            )

    def _check_timeout(self, started: float, definition_id: int) -> None:
        elapsed = time.monotonic() - started
        if elapsed > self.settings.definition_timeout_secs:
            raise MaterializationTimeout(
                f"Recurring expense {definition_id} took {elapsed:.1f}s"
            )

    def _process(self, definition_id: int, now: datetime) -> DefinitionOutcome:
        started = time.monotonic()
        with session_scope(self.session_factory) as session:
            store = self.store_factory(session)
            definition = store.get(definition_id)
            if definition is None or not definition.is_active:
                return DefinitionOutcome(definition_id, Outcome.skipped, detail="inactive")
            if not is_due(definition.interval, definition.last_processed, now, self.tz):
                return DefinitionOutcome(definition_id, Outcome.skipped, detail="not due")
            _check_invariants(definition)

            category_id = None
            if definition.category is not None:
                category = self.resolver_factory(session).resolve_or_create(
                    definition.user_id, definition.category.name
                )
                category_id = category.id
            self._check_timeout(started, definition_id)

            entry = Expense(
                user_id=definition.user_id,
                amount_cents=definition.amount_cents,
                description=definition.description,
                date=now.astimezone(self.tz).date(),
                occurred_at=to_storage(now),
                category_id=category_id,
                origin_id=definition.id,
            )
            entry_id = self.ledger_factory(session).insert(entry)
            if not store.advance_watermark(definition.id, definition.last_processed, now):
                raise _WatermarkMoved()
            self._check_timeout(started, definition_id)

        logger.info(
            f"materialized: definition_id={definition_id} user_id={entry.user_id} "
            f"expense_id={entry_id}"
        )
        return DefinitionOutcome(definition_id, Outcome.materialized, entry_id=entry_id)


def _check_invariants(definition: RecurringExpense) -> None:
    if definition.amount_cents is None or definition.amount_cents <= 0:
        raise InvariantViolation(
            f"Recurring expense {definition.id} has non-positive amount "
            f"{definition.amount_cents}"
        )
    if not (definition.description or "").strip():
        raise InvariantViolation(
            f"Recurring expense {definition.id} has an empty description"
        )

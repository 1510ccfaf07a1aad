from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from config import Settings, get_settings
from database import to_storage, utcnow
from models import (
    Category,
    Expense,
    InvariantViolation,
    RecurringExpense,
    User,
)
from periods import Period, previous_month
from report_queue import DatabaseReportQueue
from schemas import (
    CategoryIn,
    ExpenseIn,
    OwnerIn,
    RecurringExpenseIn,
    RecurringExpenseUpdate,
    ReportAck,
    ReportFormat,
    ReportJob,
)


logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


def get_current_user_id() -> int:
    return 1


def cents_to_amount(cents: int) -> float:
    return round(cents / 100, 2)


def random_color() -> str:
    return f"#{random.randint(0, 0xFFFFFF):06x}"


class CategoryAmbiguous(ValueError):
    pass


class OwnerService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError("User not found")
        return user

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id)).all()

    def create(self, data: OwnerIn) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise ValueError("User with this email already exists")
        user = User(email=email, name=data.name.strip())
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user


class CategoryService:
    """Category lookup for an owner; ``resolve_or_create`` is the resolver."""

    def __init__(self, session: Session, fuzzy_distance: Optional[int] = None) -> None:
        self.session = session
        if fuzzy_distance is None:
            fuzzy_distance = get_settings().category_fuzzy_distance
        self.fuzzy_distance = fuzzy_distance

    def list_all(self, user_id: int) -> list[Category]:
        stmt = (
            select(Category).where(Category.user_id == user_id).order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, user_id: int, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != user_id:
            raise ValueError("Category not found")
        return category

    def create(self, user_id: int, data: CategoryIn) -> Category:
        existing = self._find_exact(user_id, data.name.strip())
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=user_id,
            name=data.name.strip(),
            color=data.color or random_color(),
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def _find_exact(self, user_id: int, name: str) -> Optional[Category]:
        # Names are unique per owner only case-sensitively.
        stmt = (
            select(Category)
            .where(
                Category.user_id == user_id,
                func.lower(Category.name) == name.lower(),
            )
            .order_by(case((Category.name == name, 0), else_=1), Category.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def _find_close(self, user_id: int, name: str) -> Optional[Category]:
        if self.fuzzy_distance <= 0:
            return None
        input_lower = name.lower()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in self.list_all(user_id):
            dist = int(Levenshtein.distance(input_lower, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is None or best_distance > self.fuzzy_distance:
            return None
        if len(best) > 1:
            options = ", ".join(sorted({c.name for c in best}))
            raise CategoryAmbiguous(f"Category '{name}' is ambiguous; matches: {options}")
        return best[0]

    def resolve_or_create(self, user_id: int, name: str) -> Category:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")

        existing = self._find_exact(user_id, clean_name) or self._find_close(
            user_id, clean_name
        )
        if existing:
            return existing

        category = Category(user_id=user_id, name=clean_name, color=random_color())
        try:
            with self.session.begin_nested():
                self.session.add(category)
                self.session.flush()
        except IntegrityError:
            # Created concurrently by another writer for the same owner.
            existing = self._find_exact(user_id, clean_name)
            if not existing:
                raise
            return existing
        logger.info(
            f"category_created: user_id={user_id} category_id={category.id} name={clean_name}"
        )
        return category


class LedgerStore:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def insert(self, entry: Expense) -> int:
        if entry.amount_cents is None or entry.amount_cents <= 0:
            raise InvariantViolation(
                f"Ledger entry amount must be positive, got {entry.amount_cents}"
            )
        if not (entry.description or "").strip():
            raise InvariantViolation("Ledger entry description cannot be empty")
        self.session.add(entry)
        self.session.flush()
        return entry.id

    def create(self, user_id: int, data: ExpenseIn) -> Expense:
        now = datetime.now(timezone.utc)
        local_today = now.astimezone(ZoneInfo(self.settings.timezone)).date()
        category_id = None
        if data.category:
            category_id = (
                CategoryService(self.session).resolve_or_create(user_id, data.category).id
            )
        entry = Expense(
            user_id=user_id,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            date=data.date or local_today,
            occurred_at=to_storage(now),
            category_id=category_id,
        )
        self.insert(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def get(self, user_id: int, entry_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == user_id, Expense.id == entry_id)
        )
        entry = self.session.scalar(stmt)
        if not entry:
            raise ValueError("Expense not found")
        return entry

    def query_range(self, user_id: int, start: date, end: date) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == user_id, Expense.date.between(start, end))
            .order_by(Expense.date, Expense.id)
        )
        return self.session.scalars(stmt).all()

    def entries_for_origin(self, user_id: int, origin_id: int) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.user_id == user_id, Expense.origin_id == origin_id)
            .order_by(Expense.date, Expense.id)
        )
        return self.session.scalars(stmt).all()

    def attach_category(self, user_id: int, entry_id: int, name: str) -> Expense:
        entry = self.get(user_id, entry_id)
        category = CategoryService(self.session).resolve_or_create(user_id, name)
        entry.category_id = category.id
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def delete(self, user_id: int, entry_id: int) -> None:
        entry = self.get(user_id, entry_id)
        self.session.delete(entry)
        self.session.commit()


class RecurringExpenseStore:
    """Scheduler-facing access to recurring expenses across all owners."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_eligible(self, today: date) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .where(
                RecurringExpense.is_active.is_(True),
                RecurringExpense.start_date <= today,
                (RecurringExpense.end_date.is_(None))
                | (RecurringExpense.end_date >= today),
            )
            .order_by(RecurringExpense.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, definition_id: int) -> Optional[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .options(joinedload(RecurringExpense.category))
            .where(RecurringExpense.id == definition_id)
        )
        return self.session.scalar(stmt)

    def advance_watermark(
        self, definition_id: int, previous: datetime, now: datetime
    ) -> bool:
        """Move the watermark from ``previous`` to ``now``.

        Returns False when the stored watermark is no longer ``previous``,
        i.e. another writer materialized this definition in the meantime.
        """
        stored_now = to_storage(now)
        if stored_now < previous:
            raise InvariantViolation(
                f"Watermark for recurring expense {definition_id} cannot move back "
                f"from {previous.isoformat()} to {stored_now.isoformat()}"
            )
        result = self.session.execute(
            update(RecurringExpense)
            .where(
                RecurringExpense.id == definition_id,
                RecurringExpense.last_processed == previous,
            )
            .values(last_processed=stored_now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class RecurringExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _category_id(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        return CategoryService(self.session).resolve_or_create(self.user_id, name).id

    def get(self, definition_id: int) -> RecurringExpense:
        definition = self.session.get(RecurringExpense, definition_id)
        if not definition or definition.user_id != self.user_id:
            raise ValueError("Recurring expense not found")
        return definition

    def list(self) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .options(joinedload(RecurringExpense.category))
            .where(RecurringExpense.user_id == self.user_id)
            .order_by(RecurringExpense.start_date, RecurringExpense.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringExpenseIn) -> RecurringExpense:
        definition = RecurringExpense(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            interval=data.interval,
            start_date=data.start_date,
            end_date=data.end_date,
            category_id=self._category_id(data.category),
            is_active=True,
            last_processed=utcnow(),
        )
        self.session.add(definition)
        self.session.commit()
        self.session.refresh(definition)
        return definition

    def update(self, definition_id: int, data: RecurringExpenseUpdate) -> RecurringExpense:
        definition = self.get(definition_id)
        changes = {
            field_name: value
            for field_name, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field_name in ("end_date", "category")
        }
        start_date = changes.get("start_date", definition.start_date)
        end_date = changes.get("end_date", definition.end_date)
        if end_date is not None and end_date < start_date:
            raise ValueError("End date must not be before start date")

        if "category" in changes:
            definition.category_id = self._category_id(changes.pop("category"))
        for field_name, value in changes.items():
            setattr(definition, field_name, value)
        self.session.commit()
        self.session.refresh(definition)
        return definition

    def set_active(self, definition_id: int, is_active: bool) -> None:
        definition = self.get(definition_id)
        definition.is_active = is_active
        self.session.commit()

    def delete(self, definition_id: int) -> None:
        definition = self.get(definition_id)
        self.session.delete(definition)
        self.session.commit()

    def history(self, definition_id: int) -> list[Expense]:
        definition = self.get(definition_id)
        return LedgerStore(self.session).entries_for_origin(self.user_id, definition.id)


@dataclass
class ReportSummary:
    total_cents: int = 0
    category_totals: dict[str, int] = field(default_factory=dict)
    entry_count: int = 0


class ReportAggregator:
    def __init__(self, ledger: LedgerStore) -> None:
        self.ledger = ledger

    def aggregate(self, user_id: int, start: date, end: date) -> ReportSummary:
        summary = ReportSummary()
        for entry in self.ledger.query_range(user_id, start, end):
            name = UNCATEGORIZED
            if entry.category is not None and entry.category.name:
                name = entry.category.name
            summary.total_cents += entry.amount_cents
            summary.category_totals[name] = (
                summary.category_totals.get(name, 0) + entry.amount_cents
            )
            summary.entry_count += 1
        return summary


@dataclass
class MonthlyReportRun:
    period: Period
    queued: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class ReportService:
    def __init__(
        self,
        session: Session,
        queue: DatabaseReportQueue,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.queue = queue
        self.settings = settings or get_settings()
        self.aggregator = ReportAggregator(LedgerStore(session, self.settings))
        self.owners = OwnerService(session)

    def build_job(
        self,
        owner: User,
        start: date,
        end: date,
        report_format: ReportFormat,
        generated_at: Optional[datetime] = None,
    ) -> ReportJob:
        summary = self.aggregator.aggregate(owner.id, start, end)
        return ReportJob(
            owner_id=owner.id,
            owner_email=owner.email,
            owner_name=owner.name,
            period_start=start,
            period_end=end,
            total_amount=cents_to_amount(summary.total_cents),
            category_totals={
                name: cents_to_amount(cents)
                for name, cents in summary.category_totals.items()
            },
            format=report_format,
            generated_at=generated_at or datetime.now(timezone.utc),
        )

    def request_report(
        self,
        user_id: int,
        start: date,
        end: date,
        report_format: Optional[ReportFormat] = None,
    ) -> ReportAck:
        if start > end:
            raise ValueError("Start date must be before end date")
        owner = self.owners.get(user_id)
        report_format = report_format or ReportFormat(self.settings.report_format)
        logger.info(
            f"report_requested: user_id={user_id} start={start.isoformat()} "
            f"end={end.isoformat()} format={report_format.value}"
        )
        job = self.build_job(owner, start, end, report_format)
        self.queue.publish(job)
        return ReportAck(
            success=True,
            message=(
                "Report generation has been queued. "
                f"It will be sent to {owner.email} when ready."
            ),
        )

    def enqueue_monthly_reports(self, today: Optional[date] = None) -> MonthlyReportRun:
        today = today or datetime.now(ZoneInfo(self.settings.timezone)).date()
        period = previous_month(today)
        run = MonthlyReportRun(period=period)
        logger.info(
            f"monthly_reports_start: period={period.start.isoformat()}..{period.end.isoformat()}"
        )
        owners = self.owners.list_all()
        # Detached owners keep their loaded fields across per-owner rollbacks.
        for owner in owners:
            self.session.expunge(owner)
        for owner in owners:
            try:
                job = self.build_job(
                    owner,
                    period.start,
                    period.end,
                    ReportFormat(self.settings.report_format),
                )
                self.queue.publish(job)
                run.queued.append(owner.id)
            except Exception as exc:
                self.session.rollback()
                run.failed[owner.id] = f"{type(exc).__name__}: {exc}"
                logger.exception(f"monthly_report_failed: user_id={owner.id}")
        logger.info(
            f"monthly_reports_done: queued={len(run.queued)} failed={len(run.failed)}"
        )
        return run

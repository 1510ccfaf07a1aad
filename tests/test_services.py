import re
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base, utcnow
from models import (
    Category,
    Expense,
    InvariantViolation,
    LedgerEntryImmutable,
    RecurringExpense,
    RecurringInterval,
)
from schemas import ExpenseIn, RecurringExpenseIn, RecurringExpenseUpdate
from services import (
    CategoryAmbiguous,
    CategoryService,
    LedgerStore,
    RecurringExpenseService,
    RecurringExpenseStore,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _expense(user_id: int, day: date, cents: int, category_id=None) -> Expense:
    return Expense(
        user_id=user_id,
        amount_cents=cents,
        description="Lunch",
        date=day,
        occurred_at=datetime.combine(day, datetime.min.time()),
        category_id=category_id,
    )


def test_resolve_or_create_creates_category_with_hex_color() -> None:
    with _session() as session:
        category = CategoryService(session).resolve_or_create(1, "  Travel ")
        assert category.id is not None
        assert category.name == "Travel"
        assert re.fullmatch(r"#[0-9a-f]{6}", category.color)


def test_resolve_or_create_reuses_existing_case_insensitive() -> None:
    with _session() as session:
        service = CategoryService(session)
        food = service.resolve_or_create(1, "Food")
        assert service.resolve_or_create(1, "FOOD").id == food.id
        assert service.resolve_or_create(2, "Food").id != food.id


def test_resolve_or_create_matches_typo_within_distance() -> None:
    with _session() as session:
        service = CategoryService(session, fuzzy_distance=1)
        food = service.resolve_or_create(1, "Food")
        assert service.resolve_or_create(1, "Fod").id == food.id


def test_resolve_or_create_rejects_ambiguous_typo() -> None:
    with _session() as session:
        exact = CategoryService(session, fuzzy_distance=0)
        exact.resolve_or_create(1, "Bus")
        exact.resolve_or_create(1, "Bug")
        with pytest.raises(CategoryAmbiguous):
            CategoryService(session, fuzzy_distance=1).resolve_or_create(1, "Bu")


def test_resolve_or_create_without_fuzzy_creates_new() -> None:
    with _session() as session:
        service = CategoryService(session, fuzzy_distance=0)
        food = service.resolve_or_create(1, "Food")
        assert service.resolve_or_create(1, "Fod").id != food.id


def test_resolve_or_create_keeps_near_names_apart_by_default() -> None:
    with _session() as session:
        service = CategoryService(session)
        car = service.resolve_or_create(1, "Car")
        cat = service.resolve_or_create(1, "Cat")
        assert cat.id != car.id
        assert cat.name == "Cat"


def test_resolve_or_create_prefers_same_case_name() -> None:
    with _session() as session:
        lower = Category(user_id=1, name="food", color="#000000")
        upper = Category(user_id=1, name="Food", color="#ffffff")
        session.add_all([lower, upper])
        session.commit()

        service = CategoryService(session)
        assert service.resolve_or_create(1, "Food").id == upper.id
        assert service.resolve_or_create(1, "food").id == lower.id
        assert service.resolve_or_create(1, "FOOD").id == lower.id


def test_resolve_or_create_rejects_empty_name() -> None:
    with _session() as session:
        with pytest.raises(ValueError):
            CategoryService(session).resolve_or_create(1, "   ")


def test_ledger_entries_are_immutable_except_category() -> None:
    with _session() as session:
        store = LedgerStore(session)
        entry = store.create(
            1, ExpenseIn(amount_cents=1250, description="Taxi", date=date(2024, 3, 3))
        )
        assert entry.category_id is None

        updated = store.attach_category(1, entry.id, "Transport")
        assert updated.category.name == "Transport"

        updated.amount_cents = 1
        with pytest.raises(LedgerEntryImmutable):
            session.flush()


def test_ledger_insert_rejects_non_positive_amount() -> None:
    with _session() as session:
        with pytest.raises(InvariantViolation):
            LedgerStore(session).insert(_expense(1, date(2024, 1, 1), 0))


def test_query_range_is_inclusive_and_owner_scoped() -> None:
    with _session() as session:
        store = LedgerStore(session)
        for day in (date(2024, 1, 31), date(2024, 2, 1), date(2024, 2, 29), date(2024, 3, 1)):
            store.insert(_expense(1, day, 100))
        store.insert(_expense(2, date(2024, 2, 10), 100))
        session.commit()

        entries = store.query_range(1, date(2024, 2, 1), date(2024, 2, 29))
        assert [entry.date for entry in entries] == [date(2024, 2, 1), date(2024, 2, 29)]


def test_recurring_expense_starts_active_with_creation_watermark() -> None:
    with _session() as session:
        before = utcnow()
        definition = RecurringExpenseService(session, user_id=1).create(
            RecurringExpenseIn(
                amount_cents=4500,
                description="Phone plan",
                interval=RecurringInterval.monthly,
                start_date=date(2024, 1, 1),
                category="Utilities",
            )
        )
        assert definition.is_active is True
        assert definition.last_processed >= before
        assert session.get(Category, definition.category_id).name == "Utilities"


def test_recurring_expense_rejects_end_before_start() -> None:
    with pytest.raises(ValueError):
        RecurringExpenseIn(
            amount_cents=100,
            description="Bad window",
            interval=RecurringInterval.daily,
            start_date=date(2024, 2, 1),
            end_date=date(2024, 1, 1),
        )


def test_owner_edits_and_deactivation() -> None:
    with _session() as session:
        service = RecurringExpenseService(session, user_id=1)
        definition = service.create(
            RecurringExpenseIn(
                amount_cents=900,
                description="Streaming",
                interval=RecurringInterval.monthly,
                start_date=date(2024, 1, 1),
            )
        )
        watermark = definition.last_processed

        service.update(
            definition.id,
            RecurringExpenseUpdate(amount_cents=1100, end_date=date(2024, 12, 31)),
        )
        service.set_active(definition.id, False)

        reloaded = service.get(definition.id)
        assert reloaded.amount_cents == 1100
        assert reloaded.end_date == date(2024, 12, 31)
        assert reloaded.is_active is False
        assert reloaded.last_processed == watermark
        assert RecurringExpenseStore(session).list_eligible(date(2024, 6, 1)) == []

        with pytest.raises(ValueError):
            RecurringExpenseService(session, user_id=2).get(definition.id)


def test_rejected_update_leaves_definition_untouched() -> None:
    with _session() as session:
        service = RecurringExpenseService(session, user_id=1)
        definition = service.create(
            RecurringExpenseIn(
                amount_cents=900,
                description="Streaming",
                interval=RecurringInterval.monthly,
                start_date=date(2024, 3, 1),
            )
        )

        with pytest.raises(ValueError):
            service.update(
                definition.id,
                RecurringExpenseUpdate(
                    description="Renamed", end_date=date(2024, 2, 1)
                ),
            )

        assert definition.description == "Streaming"
        assert definition.end_date is None
        assert not session.dirty

        service.update(definition.id, RecurringExpenseUpdate(end_date=date(2024, 12, 31)))
        with pytest.raises(ValueError):
            service.update(
                definition.id, RecurringExpenseUpdate(start_date=date(2025, 1, 1))
            )
        assert definition.start_date == date(2024, 3, 1)
        assert definition.end_date == date(2024, 12, 31)


def test_deleting_definition_keeps_materialized_history() -> None:
    with _session() as session:
        service = RecurringExpenseService(session, user_id=1)
        definition = service.create(
            RecurringExpenseIn(
                amount_cents=900,
                description="Streaming",
                interval=RecurringInterval.monthly,
                start_date=date(2024, 1, 1),
            )
        )
        entry = _expense(1, date(2024, 2, 1), 900)
        entry.origin_id = definition.id
        LedgerStore(session).insert(entry)
        session.commit()
        assert [e.id for e in service.history(definition.id)] == [entry.id]

        service.delete(definition.id)

        assert session.scalars(select(RecurringExpense)).all() == []
        remaining = LedgerStore(session).entries_for_origin(1, definition.id)
        assert [e.id for e in remaining] == [entry.id]


def test_advance_watermark_refuses_to_move_backwards() -> None:
    with _session() as session:
        definition = RecurringExpense(
            user_id=1,
            amount_cents=100,
            description="Coffee",
            interval=RecurringInterval.daily,
            start_date=date(2024, 1, 1),
            last_processed=datetime(2024, 5, 1),
        )
        session.add(definition)
        session.commit()
        store = RecurringExpenseStore(session)

        with pytest.raises(InvariantViolation):
            store.advance_watermark(definition.id, datetime(2024, 5, 1), datetime(2024, 4, 1))
        assert store.advance_watermark(
            definition.id, datetime(2024, 5, 1), datetime(2024, 5, 2)
        )
        assert not store.advance_watermark(
            definition.id, datetime(2024, 5, 1), datetime(2024, 5, 3)
        )

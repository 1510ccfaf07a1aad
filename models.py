from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base, utcnow


class RecurringInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class MessageStatus(str, Enum):
    pending = "pending"
    in_flight = "in_flight"
    done = "done"
    failed = "failed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class Expense(Base, TimestampMixin):
    """A ledger entry, entered by hand or materialized from a recurring expense.

    ``origin_id`` is a lookup-only reference to the recurring expense that
    produced the entry. It carries no foreign key so that deleting the
    recurring expense leaves its history intact.
    """

    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    origin_id: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_origin", "origin_id"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )


# Columns a ledger entry may change after insert.
EXPENSE_MUTABLE_COLUMNS = frozenset({"category_id", "updated_at"})


class InvariantViolation(Exception):
    """A record reached code that relies on a model invariant it breaks."""


class LedgerEntryImmutable(InvariantViolation):
    pass


@event.listens_for(Expense, "before_update")
def _reject_ledger_rewrites(_mapper, _connection, target: Expense) -> None:
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in EXPENSE_MUTABLE_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise LedgerEntryImmutable(
                f"Expense {target.id} is immutable; cannot change {attr.key}"
            )


class RecurringExpense(Base, TimestampMixin):
    __tablename__ = "recurring_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    interval: Mapped[RecurringInterval] = mapped_column(
        SAEnum(RecurringInterval), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Watermark: when this definition was last materialized.
    last_processed: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index(
            "ix_recurring_active_window",
            "is_active",
            "start_date",
            "end_date",
        ),
        Index("ix_recurring_user", "user_id"),
    )


class QueuedMessage(Base, TimestampMixin):
    __tablename__ = "report_queue_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    queue: Mapped[str] = mapped_column(String(100), nullable=False)
    pattern: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[MessageStatus] = mapped_column(
        SAEnum(MessageStatus), default=MessageStatus.pending, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    claim_token: Mapped[Optional[str]] = mapped_column(String(32))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_queue_messages_claim", "queue", "status", "available_at"),
    )

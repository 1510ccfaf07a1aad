import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from models import RecurringInterval


class ReportFormat(str, Enum):
    pdf = "pdf"
    html = "html"
    csv = "csv"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class OwnerIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=120)


class ExpenseIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, max_length=100)


class RecurringExpenseIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    interval: RecurringInterval
    start_date: date
    end_date: Optional[date] = None
    category: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def _check_window(self) -> "RecurringExpenseIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RecurringExpenseUpdate(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    interval: Optional[RecurringInterval] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None


class ReportRequestIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_date: date
    end_date: date
    format: ReportFormat = ReportFormat.pdf

    @model_validator(mode="after")
    def _check_range(self) -> "ReportRequestIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class ReportAck(BaseModel):
    success: bool
    message: str


class ReportJob(BaseModel):
    """Message placed on the report queue, serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    owner_id: int
    owner_email: str
    owner_name: str
    period_start: date
    period_end: date
    total_amount: float
    category_totals: dict[str, float] = Field(default_factory=dict)
    format: ReportFormat = ReportFormat.pdf
    generated_at: datetime

    def to_message(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_message(cls, payload: str) -> "ReportJob":
        return cls.model_validate_json(payload)

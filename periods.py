from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def label(self) -> str:
        if self.slug == "month":
            return self.start.strftime("%B %Y")
        return f"{self.start.isoformat()} - {self.end.isoformat()}"


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period("month", first, next_month - date.resolution)


def previous_month(today: date) -> Period:
    last_month_end = today.replace(day=1) - date.resolution
    return month_period(last_month_end.year, last_month_end.month)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "last_month":
        return previous_month(today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    return month_period(today.year, today.month)

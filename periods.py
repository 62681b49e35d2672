from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + count
    return total // 12, total % 12 + 1


def next_month(today: date) -> tuple[int, int]:
    return add_months(today.year, today.month, 1)


def month_key(year: int, month: int) -> int:
    """Sortable integer for a calendar month (2025-06 -> 24305)."""
    return year * 12 + (month - 1)


def format_month(year: int, month: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {year}"


def validate_month(year: int, month: int) -> None:
    if not 1 <= month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {month}")
    if not 1970 <= year <= 3000:
        raise ValidationError(f"Year out of range: {year}")


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        year, month = add_months(today.year, today.month, -1)
        return Period("last_month", month_start(year, month), month_end(year, month))
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def today_local() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    if not 1970 <= year <= 3000:
        raise ValueError("Year out of range")
    first = date(year, month, 1)
    end = add_months(first, 1) - date.resolution
    return Period(f"{year:04d}-{month:02d}", first, end)


def trailing_period(months: int, *, today: Optional[date] = None) -> Period:
    today = today or today_local()
    month_index = (today.year * 12) + (today.month - 1) - months
    start_year = month_index // 12
    start_month = (month_index % 12) + 1
    # Clamp the day for months shorter than today's day of month.
    last_day = (add_months(date(start_year, start_month, 1), 1) - date.resolution).day
    start = date(start_year, start_month, min(today.day, last_day))
    return Period(f"last_{months}_months", start, today)


def resolve_range(
    start: Optional[date],
    end: Optional[date],
) -> Optional[Period]:
    if not start and not end:
        return None
    start_date = start or date(1970, 1, 1)
    end_date = end or date(3000, 12, 31)
    if start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period("custom", start_date, end_date)

from __future__ import annotations

import calendar
from datetime import date, timedelta


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    last_day = calendar.monthrange(value.year, value.month)[1]
    return date(value.year, value.month, last_day)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    first = date(year, month, 1)
    return first, month_end(first)


def year_bounds(year: int) -> tuple[date, date]:
    return date(year, 1, 1), date(year, 12, 31)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def inclusive_days(start_date: date, end_date: date) -> int:
    return (end_date - start_date).days + 1


def day_before(value: date) -> date:
    return value - timedelta(days=1)

"""Calendar helpers shared by billing cycles and pattern projections."""

from __future__ import annotations

import calendar
from datetime import date


def add_months(d: date, months: int) -> date:
    """Shift ``d`` by whole months, clamping the day to the target month's length.

    ``add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)``.
    """

    index = d.year * 12 + (d.month - 1) + months
    year, month0 = divmod(index, 12)
    last_day = calendar.monthrange(year, month0 + 1)[1]
    return date(year, month0 + 1, min(d.day, last_day))


def month_index(d: date) -> int:
    """Months since year 0; differences give calendar-month gaps."""

    return d.year * 12 + (d.month - 1)


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


__all__ = ["add_months", "month_index", "month_key"]

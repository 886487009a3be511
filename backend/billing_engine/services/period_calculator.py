"""
Billing period arithmetic — pure functions, naive UTC, no I/O.

A period runs from midnight of its first day to one millisecond before the
next billing instant, so consecutive periods are contiguous and never overlap:

    start = 2024-01-31 00:00:00
    next_billing_at = 2024-02-29 00:00:00   (month-end clamp)
    end = 2024-02-28 23:59:59.999
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

ONE_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime
    end: datetime
    next_billing_at: datetime


def start_of_day(value: datetime | date) -> datetime:
    """Midnight of the calendar day containing ``value``."""
    if isinstance(value, datetime):
        value = value.date()
    return datetime.combine(value, time.min)


def end_of_day(value: datetime | date) -> datetime:
    """Last millisecond of the calendar day containing ``value``."""
    return start_of_day(value) + timedelta(days=1) - ONE_MS


def add_months(value: datetime, months: int) -> datetime:
    """
    Same day-of-month ``months`` later, clamped to the last day of the target
    month (Jan 31 + 1 month -> Feb 28/29, never Mar 3). Time of day is kept.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def period_starting(anchor: datetime) -> BillingPeriod:
    """Monthly period whose first day is the calendar day of ``anchor``."""
    start = start_of_day(anchor)
    next_billing_at = add_months(start, 1)
    return BillingPeriod(start=start, end=next_billing_at - ONE_MS, next_billing_at=next_billing_at)


def next_period(previous_end: datetime) -> BillingPeriod:
    """Period that immediately follows one ending at ``previous_end``."""
    return period_starting(previous_end + ONE_MS)


def yesterday_end_of_day(now: datetime) -> datetime:
    """23:59:59.999 of the day before ``now``: cutoff for elapsed periods."""
    return start_of_day(now) - ONE_MS


def grace_deadline(failed_at: datetime, days: int) -> datetime:
    """End of the day ``days`` after the failure."""
    return end_of_day(failed_at + timedelta(days=days))

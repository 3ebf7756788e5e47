"""Billing period arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from dateutil.relativedelta import relativedelta

from utils import utc_now


class BillingPeriod(NamedTuple):
    period_start: datetime
    period_end: datetime
    next_billing_date: datetime


def add_safe_months(date, months: int):
    """Add *months* calendar months to *date*.

    The day-of-month is clamped to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (Feb 29 in leap years).  Works for both
    ``date`` and ``datetime`` values; the time of day is preserved.
    """
    return date + relativedelta(months=months)


def compute_period(start: Optional[datetime] = None) -> BillingPeriod:
    """Return the one-month billing period beginning at *start* (default: now)."""
    period_start = start if start is not None else utc_now()
    next_billing_date = add_safe_months(period_start, 1)
    period_end = next_billing_date - timedelta(days=1)
    return BillingPeriod(period_start, period_end, next_billing_date)

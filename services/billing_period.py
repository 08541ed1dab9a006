"""
Billing period calculator - pure date arithmetic for billing windows.

Nothing here touches the database or the clock; callers pass `now` in.
All windows are half-open: [start, end).
"""
from calendar import monthrange
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from models.billing import BillingPeriod

Window = Tuple[datetime, datetime]

MONTHS_PER_PERIOD = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
}


def add_months(start: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the last valid day of the target
    month (Jan 31 + 1 month -> Feb 28/29). Time of day is preserved.
    """
    total_months = start.month - 1 + months
    year = start.year + total_months // 12
    month = total_months % 12 + 1
    day = min(start.day, monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_end(start: datetime, cadence: Union[BillingPeriod, str]) -> datetime:
    """
    End of the billing period that begins at `start`.

    Raises:
        ValueError: if the cadence is not a supported billing period
    """
    return add_months(start, MONTHS_PER_PERIOD[BillingPeriod(cadence)])


def trial_end(start: datetime, trial_days: int) -> datetime:
    return start + timedelta(days=trial_days)


def in_window(now: datetime, start: datetime, end: datetime) -> bool:
    return start <= now < end


def current_period_window(subscription, now: datetime) -> Optional[Window]:
    """
    The subscription's stored period if it still contains `now`.

    Returns None once `now >= current_period_end`; rolling the period forward
    is the lifecycle's job, not this calculator's.
    """
    start = subscription.current_period_start
    end = subscription.current_period_end
    if in_window(now, start, end):
        return start, end
    return None


def next_period_window(
    start: datetime,
    end: datetime,
    cadence: Union[BillingPeriod, str],
    now: datetime,
) -> Window:
    """Roll [start, end) forward one period at a time until it contains `now`."""
    while now >= end:
        start, end = end, period_end(end, cadence)
    return start, end


def calendar_month_window(now: datetime) -> Window:
    """[first instant of this month, first instant of next month)"""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)

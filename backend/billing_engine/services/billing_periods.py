"""
Billing period arithmetic.

WHAT: Pure functions that compute period boundaries from a start instant,
a billing interval and an interval count.

WHY: The processor reports ``current_period_end`` at checkout time as the
end of the trial, not the end of the first paid period. Entitlement checks
and the reconciliation sweep need the first real billing boundary, so we
compute it ourselves with calendar-correct rules:
- day and week intervals add a fixed number of seconds
- month and year intervals move the calendar field and clamp the day of
  month (Jan 31 + 1 month = Feb 28, or Feb 29 in a leap year)

HOW: ``dateutil.relativedelta`` does the month/year clamping. Nothing here
touches the database or the clock, so callers pass ``now`` explicitly.
"""

from datetime import datetime, timedelta
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from billing_engine.core.exceptions import ValidationError
from billing_engine.models.plan import BillingInterval
from billing_engine.models.subscription import FREE_TIER_PERIOD_END


IntervalLike = Union[BillingInterval, str]


def add_billing_interval(
    start: datetime,
    interval: IntervalLike,
    count: int = 1,
) -> datetime:
    """
    Advance ``start`` by ``count`` billing intervals.

    Args:
        start: Period start (naive UTC)
        interval: day, week, month or year
        count: Number of intervals, at least 1

    Returns:
        End of the period

    Raises:
        ValidationError: If count is below 1 or the interval is unknown

    Example:
        >>> add_billing_interval(datetime(2025, 1, 31), "month")
        datetime.datetime(2025, 2, 28, 0, 0)
    """
    if count is None or count < 1:
        raise ValidationError(
            message="Billing interval count must be at least 1",
            billing_interval_count=count,
        )

    try:
        interval = BillingInterval(interval)
    except ValueError:
        raise ValidationError(
            message=f"Unknown billing interval: {interval}",
            billing_interval=str(interval),
        )

    if interval == BillingInterval.DAY:
        return start + timedelta(days=count)
    if interval == BillingInterval.WEEK:
        return start + timedelta(weeks=count)
    if interval == BillingInterval.MONTH:
        return start + relativedelta(months=count)
    return start + relativedelta(years=count)


def trial_end_for(start: datetime, trial_days: int) -> Optional[datetime]:
    """
    End of a trial that starts at ``start``.

    Returns:
        Trial end, or None when the plan has no trial
    """
    if not trial_days or trial_days <= 0:
        return None
    return start + timedelta(days=trial_days)


def resolve_period_end(
    gateway_period_end: datetime,
    interval: IntervalLike,
    count: int = 1,
    trial_end: Optional[datetime] = None,
) -> datetime:
    """
    Period end to store for a subscription.

    WHAT: Without a trial, the processor's value is already the billing
    boundary. With a trial, the first charge happens at ``trial_end`` and
    the entitlement runs one full period beyond it.

    Args:
        gateway_period_end: current_period_end as reported by the processor
        interval: Plan billing interval
        count: Plan billing interval count
        trial_end: Trial end if the subscription is trialing

    Returns:
        Period end (naive UTC)
    """
    if trial_end is None:
        return gateway_period_end
    return add_billing_interval(trial_end, interval, count)


def is_period_expired(period_end: Optional[datetime], now: datetime) -> bool:
    """
    Whether a period ended strictly before ``now``.

    WHY: Free-tier rows use a far-future sentinel and must never expire.
    """
    if period_end is None or period_end >= FREE_TIER_PERIOD_END:
        return False
    return period_end < now

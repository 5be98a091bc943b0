from datetime import datetime, timedelta, timezone
from dataclasses import dataclass

from app.errors import ErrorKind, Result, failure, success


ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class ChargeBreakdown:
    used_days: int
    total_amount: float


def to_naive_utc(moment: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware inputs are converted to match."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now() -> datetime:
    return to_naive_utc(datetime.now(timezone.utc))


def used_days(issue_date: datetime, submit_date: datetime) -> int:
    """
    Whole days elapsed between issue and submit, rounded up.

    Internal Working:
    - divmod on timedelta gives exact whole days plus a remainder
    - any non-zero remainder counts as one more day
    - a zero-length loan is 0 days (no minimum-one-day policy)
    """
    days, remainder = divmod(to_naive_utc(submit_date) - to_naive_utc(issue_date), ONE_DAY)
    return days + (1 if remainder else 0)


def calculate_charge(
    issue_date: datetime, submit_date: datetime, rate: float
) -> Result[ChargeBreakdown]:
    """
    Compute the used days and the charge for one loan.

    Args:
        issue_date: When the book was issued
        submit_date: When the book was (or would be) returned
        rate: The book's per-day charge

    Returns:
        Result carrying a ChargeBreakdown, or InvalidDateRange when the
        submit date precedes the issue date or the rate is negative
    """
    if rate is None or rate < 0:
        return failure(ErrorKind.INVALID_DATE_RANGE)
    if to_naive_utc(submit_date) < to_naive_utc(issue_date):
        return failure(ErrorKind.INVALID_DATE_RANGE)

    days = used_days(issue_date, submit_date)
    return success(ChargeBreakdown(used_days=days, total_amount=days * rate))

# core/billing_utils.py
import calendar
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Tuple

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how rows are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    """Convert a gateway unix timestamp to naive UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def month_window(moment: datetime) -> Tuple[datetime, datetime]:
    """Half-open calendar month [first day, first day of next month)."""
    start = datetime(moment.year, moment.month, 1)
    return start, add_months(start, 1)


def billing_window(next_billing_date: Optional[datetime], now: datetime) -> Tuple[datetime, datetime]:
    """
    Current billing period for a box.

    The period ends at the next billing date and started one month earlier.
    Boxes without a billing date fall back to the calendar month.
    """
    if next_billing_date is None:
        return month_window(now)
    return add_months(next_billing_date, -1), next_billing_date


def days_between(start: datetime, end: datetime) -> int:
    """Whole days between two moments, partial days rounded up."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // timedelta(days=1).total_seconds()))


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(amount: int, currency: str = "USD") -> str:
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{amount / 100:,.2f}"


def to_unix(moment: datetime) -> int:
    """Inverse of from_unix for naive UTC timestamps."""
    return calendar.timegm(moment.utctimetuple())

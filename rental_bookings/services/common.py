"""Shared service helpers: dates, money and clocks."""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import pytz

from rental_bookings.exceptions import InvalidRangeError
from rental_bookings.utils.constants import DATE_FMT

_CENT = Decimal("0.01")


# -------- date helpers --------
def as_date(x) -> date:
    """Coerce any date-like to a naive date (supports 'YYYY-MM-DD' or ISO with T)."""
    if isinstance(x, datetime):
        return x.date()
    if isinstance(x, date):
        return x
    if isinstance(x, str):
        base = x.split("T", 1)[0].strip()
        try:
            return datetime.strptime(base, DATE_FMT).date()
        except ValueError:
            raise InvalidRangeError(f"Invalid date {x!r} (expected YYYY-MM-DD)") from None
    raise InvalidRangeError(f"Unsupported date: {x!r}")


def overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """
    Check overlap between [a_start, a_end) and [b_start, b_end).
    End date is exclusive: booking 2025-10-22 -> 2025-10-23 occupies the day of 22 only.
    Overlap rule: a_start < b_end and b_start < a_end
    """
    return a_start < b_end and b_start < a_end


def utcnow() -> datetime:
    """Default clock; services accept a replacement for testing."""
    return datetime.now(timezone.utc)


def local_today(now: datetime, tz_name: str) -> date:
    """Calendar date of `now` in the marketplace timezone."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(pytz.timezone(tz_name)).date()


# -------- money helpers --------
def money(value) -> Decimal:
    """Quantise to paise/cents, rounding half up."""
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)

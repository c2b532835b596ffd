"""Date formatting helpers for timestamps shown to renters."""
from datetime import datetime, timezone
from typing import Optional

import pytz

from rental_bookings.utils.constants import DEFAULT_MARKET_TIMEZONE


def fmt_iso_local(value: Optional[datetime], tz_name: str = DEFAULT_MARKET_TIMEZONE) -> str:
    """
    Format a datetime in the marketplace's local time as 'DD/MM/YYYY HH:MM'.
    Naive datetimes are taken as UTC; None gives "".
    """
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(pytz.timezone(tz_name)).strftime("%d/%m/%Y %H:%M")

"""Quotes and availability for a vehicle over a date range."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from rental_bookings.exceptions import InvalidRangeError
from rental_bookings.models.vehicle import Vehicle
from rental_bookings.services.common import as_date, local_today, money, overlap, utcnow
from rental_bookings.utils.constants import (
    ACTIVE_BOOKING_STATES,
    DEFAULT_MARKET_TIMEZONE,
    DEFAULT_PENDING_TIMEOUT_MINUTES,
    DEFAULT_PLATFORM_FEE_RATE,
    BookingStatus,
)


@dataclass(frozen=True)
class Quote:
    days: int
    base_price: Decimal
    platform_fee: Decimal
    extras: Decimal
    total_price: Decimal

    def to_dict(self) -> dict:
        return {
            "days": self.days,
            "base_price": float(self.base_price),
            "platform_fee": float(self.platform_fee),
            "extras": float(self.extras),
            "total_price": float(self.total_price),
        }


class PricingService:
    """
    Price calculation and advisory availability checks.

    total = days * price_per_day * (1 + fee_rate) + delivery extras.
    The availability check is only a read; the store's reservation guard is
    what actually prevents double-booking.
    """

    def __init__(
            self,
            store,
            fee_rate=DEFAULT_PLATFORM_FEE_RATE,
            tz_name: str = DEFAULT_MARKET_TIMEZONE,
            pending_timeout: timedelta = timedelta(minutes=DEFAULT_PENDING_TIMEOUT_MINUTES),
            clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.fee_rate = Decimal(str(fee_rate))
        self.tz_name = tz_name
        self.pending_timeout = pending_timeout
        self.clock = clock or utcnow

    def validate_range(self, start_date, end_date) -> tuple[date, date]:
        """Parse both dates and reject empty, inverted or past ranges."""
        d1 = as_date(start_date)
        d2 = as_date(end_date)
        if d2 <= d1:
            raise InvalidRangeError(
                "End date must be after start date",
                details={"start_date": d1.isoformat(), "end_date": d2.isoformat()},
            )
        today = local_today(self.clock(), self.tz_name)
        if d1 < today:
            raise InvalidRangeError(
                "Start date cannot be in the past",
                details={"start_date": d1.isoformat(), "today": today.isoformat()},
            )
        return d1, d2

    def compute_quote(self, vehicle: Vehicle, start_date, end_date,
                      pickup: bool = False, dropoff: bool = False) -> Quote:
        d1, d2 = self.validate_range(start_date, end_date)
        days = (d2 - d1).days
        base = money(vehicle.price_for_days(days))
        fee = money(base * self.fee_rate)
        extras = Decimal("0")
        if pickup:
            extras += vehicle.pickup_charge
        if dropoff:
            extras += vehicle.dropoff_charge
        extras = money(extras)
        return Quote(
            days=days,
            base_price=base,
            platform_fee=fee,
            extras=extras,
            total_price=money(base + fee + extras),
        )

    def conflicts(self, vehicle_id: str, start_date, end_date) -> list[dict]:
        """Active bookings on this vehicle whose [start, end) intersects the range."""
        d1, d2 = as_date(start_date), as_date(end_date)
        stale_before = self.clock() - self.pending_timeout
        out = []
        for b in self.store.list_bookings(vehicle_id=str(vehicle_id), statuses=ACTIVE_BOOKING_STATES):
            if b.status == BookingStatus.PENDING and b.created_at <= stale_before:
                # expirable; the next reservation releases it
                continue
            if overlap(d1, d2, b.start_date, b.end_date):
                out.append({
                    "booking_id": b.booking_id,
                    "start_date": b.start_date.isoformat(),
                    "end_date": b.end_date.isoformat(),
                })
        return out

    def check_availability(self, vehicle_id: str, start_date, end_date) -> bool:
        return not self.conflicts(vehicle_id, start_date, end_date)

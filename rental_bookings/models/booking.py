from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from rental_bookings.utils.constants import (
    ACTIVE_BOOKING_STATES,
    DEFAULT_CURRENCY,
    BookingStatus,
    PaymentStatus,
    RefundStatus,
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class Booking:
    """
    A reservation of one vehicle over the half-open range [start_date, end_date).
    Prices are frozen at creation time and never recomputed.
    """
    booking_id: str
    vehicle_id: str
    renter_id: str
    start_date: date
    end_date: date
    days: int
    base_price: Decimal
    platform_fee: Decimal
    total_price: Decimal
    created_at: datetime
    extras: Decimal = Decimal("0")
    status: str = BookingStatus.PENDING
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    invoice_no: Optional[str] = None
    payment_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @property
    def holds_dates(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.booking_id,
            "vehicle_id": self.vehicle_id,
            "renter_id": self.renter_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "days": self.days,
            "base_price": _money(self.base_price),
            "platform_fee": _money(self.platform_fee),
            "extras": _money(self.extras),
            "total_price": _money(self.total_price),
            "status": self.status,
            "pickup_location": self.pickup_location,
            "dropoff_location": self.dropoff_location,
            "invoice_no": self.invoice_no,
            "payment_id": self.payment_id,
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "completed_at": _iso(self.completed_at),
            "expired_at": _iso(self.expired_at),
        }


@dataclass
class Payment:
    """
    One checkout attempt for a booking. `status` is owned by the payment
    orchestrator, the refund_* fields by the refund tracker.
    """
    payment_id: str
    booking_id: str
    gateway_order_id: str
    amount: Decimal
    created_at: datetime
    currency: str = DEFAULT_CURRENCY
    status: str = PaymentStatus.CREATED
    gateway_payment_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refund_status: str = RefundStatus.NOT_REQUESTED
    refund_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_initiated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_history: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.payment_id,
            "booking_id": self.booking_id,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "captured_at": _iso(self.captured_at),
            "refund_status": self.refund_status,
            "refund_id": self.refund_id,
            "refund_amount": _money(self.refund_amount),
            "refund_initiated_at": _iso(self.refund_initiated_at),
            "refunded_at": _iso(self.refunded_at),
        }

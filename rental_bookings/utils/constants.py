# rental_bookings/utils/constants.py

"""
Global constants for roles, statuses, and configuration defaults.
These constants are imported by models, services and the app factory.
"""

# Date format (used for booking start/end)
DATE_FMT = "%Y-%m-%d"


class Role:
    RENTER = "renter"
    HOST = "host"
    ADMIN = "admin"


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PaymentStatus:
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"


class RefundStatus:
    NOT_REQUESTED = "not_requested"
    INITIATED = "initiated"
    PROCESSED = "processed"
    COMPLETED = "completed"
    FAILED = "failed"


class VehicleStatus:
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


# Bookings in these states hold their date range.
ACTIVE_BOOKING_STATES = {BookingStatus.PENDING, BookingStatus.CONFIRMED}

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.EXPIRED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.COMPLETED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.EXPIRED: set(),
}

# Position along the refund pipeline; FAILED is handled separately.
REFUND_ORDER = {
    RefundStatus.NOT_REQUESTED: 0,
    RefundStatus.INITIATED: 1,
    RefundStatus.PROCESSED: 2,
    RefundStatus.COMPLETED: 3,
}
TERMINAL_REFUND_STATES = {RefundStatus.COMPLETED, RefundStatus.FAILED}

# --- Config defaults (overridable through env vars / create_app(config=...)) ---
DEFAULT_PLATFORM_FEE_RATE = "0.02"
DEFAULT_PENDING_TIMEOUT_MINUTES = 30
DEFAULT_REFUND_POLL_INTERVAL_SECONDS = 10
DEFAULT_GATEWAY_MAX_RETRIES = 3
DEFAULT_GATEWAY_BACKOFF_SECONDS = 0.5
DEFAULT_CURRENCY = "INR"
DEFAULT_MARKET_TIMEZONE = "Asia/Kolkata"

"""
Custom exception classes for the booking & payment engine.

Every error carries an HTTP-ish `status_code` and a `kind` so the API layer
can tell "dates unavailable" (conflict) from "system error" (external_service)
without inspecting messages. `details` holds machine-readable context such as
the conflicting date ranges or the illegal transition.
"""
from typing import Optional


class BookingEngineError(Exception):
    """Base class for every error raised by the booking engine."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "Error: booking engine failure", details: Optional[dict] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:  # pragma: no cover
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "details": self.details}


# ---------------- caller's fault (4xx) ----------------
class ValidationError(BookingEngineError):
    """Bad input: malformed dates, missing fields, bad payment proof."""

    kind = "validation"
    status_code = 400

    def __init__(self, message: str = "Error: invalid request", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class InvalidRangeError(ValidationError):
    """Raised when end date is not after start date, or start date is in the past."""

    def __init__(self, message: str = "Error: invalid date range", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class SignatureMismatchError(ValidationError):
    """Raised when a gateway payment signature does not match the expected HMAC."""

    def __init__(self, message: str = "Error: payment signature mismatch", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class NotFoundError(BookingEngineError):
    kind = "not_found"
    status_code = 404


class VehicleNotFoundError(NotFoundError):
    """Raised when a vehicle ID cannot be found in the system."""

    def __init__(self, message: str = "Error: vehicle not found", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class BookingNotFoundError(NotFoundError):
    """Raised when a booking record cannot be found in the system."""

    def __init__(self, message: str = "Error: booking not found", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class PaymentNotFoundError(NotFoundError):
    """Raised when no payment (or refund) record matches the given ID."""

    def __init__(self, message: str = "Error: payment not found", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


# ---------------- conflicts ----------------
class ConflictError(BookingEngineError):
    """The requested dates clash with another booking; retry with other dates."""

    kind = "conflict"
    status_code = 409


class OverlapError(ConflictError):
    """Raised when the date range overlaps an active booking for the same vehicle."""

    def __init__(self, message: str = "Error: dates overlap an existing booking", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class VehicleUnavailableError(ConflictError):
    """Raised when a vehicle is not open for bookings at all."""

    def __init__(self, message: str = "Error: vehicle is not available", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


# ---------------- authorization ----------------
class AuthorizationError(BookingEngineError):
    kind = "authorization"
    status_code = 403


class Unauthorized(AuthorizationError):
    """Raised when the actor is neither the renter nor an admin."""

    def __init__(self, message: str = "Error: not allowed to act on this booking", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


# ---------------- external services ----------------
class ExternalServiceError(BookingEngineError):
    """Gateway or store unavailable. Retried internally before it surfaces."""

    kind = "external_service"
    status_code = 503


class GatewayUnavailableError(ExternalServiceError):
    """Raised when the payment gateway cannot be reached after bounded retries."""

    def __init__(self, message: str = "Error: payment gateway unavailable", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


# ---------------- illegal transitions ----------------
class StateError(BookingEngineError):
    """Illegal transition: a logic bug or a stale client view."""

    kind = "state"
    status_code = 409


class InvalidStateError(StateError):
    def __init__(self, message: str = "Error: illegal booking transition", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class StaleBookingError(StateError):
    """Raised when a pending reservation outlived the payment window."""

    def __init__(self, message: str = "Error: booking reservation has expired", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class NotCancellableError(StateError):
    def __init__(self, message: str = "Error: booking cannot be cancelled", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


# ---------------- async reconciliation ----------------
class ReconciliationAnomaly(BookingEngineError):
    """
    Out-of-order or duplicate asynchronous update. Recorded for audit and
    absorbed; there is no caller waiting for it.
    """

    kind = "reconciliation"
    status_code = 202


class RegressionError(ReconciliationAnomaly):
    """Raised internally when a refund update would move the status backwards."""

    def __init__(self, message: str = "Error: refund status regression", details: Optional[dict] = None) -> None:
        super().__init__(message, details)


class UnknownRefundError(ReconciliationAnomaly):
    """
    Raised internally when an update names a refund id nobody has linked yet.
    Kept for replay: the gateway's id may arrive before our dispatch records it.
    """

    def __init__(self, message: str = "Error: unknown refund id", details: Optional[dict] = None) -> None:
        super().__init__(message, details)

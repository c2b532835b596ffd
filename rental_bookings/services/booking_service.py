"""Booking lifecycle: pending -> confirmed -> (cancelled | completed), pending -> expired."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from rental_bookings.exceptions import (
    BookingNotFoundError,
    InvalidStateError,
    NotCancellableError,
    StaleBookingError,
    Unauthorized,
    VehicleNotFoundError,
    VehicleUnavailableError,
)
from rental_bookings.models.booking import Booking, Payment
from rental_bookings.models.user import Actor
from rental_bookings.services.common import local_today, utcnow
from rental_bookings.services.pricing_service import PricingService, Quote
from rental_bookings.services.refund_service import RefundService
from rental_bookings.utils.constants import (
    BOOKING_TRANSITIONS,
    DEFAULT_MARKET_TIMEZONE,
    DEFAULT_PENDING_TIMEOUT_MINUTES,
    BookingStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


def assert_transition(current: str, target: str) -> None:
    if target not in BOOKING_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Invalid booking transition: {current} -> {target}",
            details={"current": current, "target": target},
        )


class BookingService:
    """
    Create, confirm, cancel, complete and expire bookings.

    Every status change is a compare-and-set through `store.mutate_booking`,
    so concurrent callers see either the old or the new state, never a mix.
    Gateway work (refunds) is started only after the booking write returns.
    """

    def __init__(
            self,
            store,
            pricing: PricingService,
            refunds: RefundService,
            pending_timeout: timedelta = timedelta(minutes=DEFAULT_PENDING_TIMEOUT_MINUTES),
            tz_name: str = DEFAULT_MARKET_TIMEZONE,
            clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.pricing = pricing
        self.refunds = refunds
        self.pending_timeout = pending_timeout
        self.tz_name = tz_name
        self.clock = clock or utcnow

    # ---------- helpers ----------
    def _today(self):
        return local_today(self.clock(), self.tz_name)

    def is_stale(self, booking: Booking, now: Optional[datetime] = None) -> bool:
        """A pending booking older than the payment window no longer holds its dates."""
        now = now or self.clock()
        return booking.status == BookingStatus.PENDING and booking.created_at <= now - self.pending_timeout

    def get(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Error: booking '{booking_id}' not found")
        return booking

    def bookings_for_renter(self, renter_id: str) -> list[Booking]:
        """This renter's bookings, newest first."""
        return list(reversed(self.store.list_bookings(renter_id=renter_id)))

    # ---------- create ----------
    def create(self, vehicle_id: str, renter_id: str, start_date, end_date,
               pickup_location: Optional[str] = None,
               dropoff_location: Optional[str] = None) -> tuple[Booking, Quote]:
        """
        Price the range and reserve it as a pending booking.

        The overlap check and insert happen atomically inside the store, so two
        concurrent requests for overlapping dates cannot both succeed; the
        loser gets OverlapError with the clashing ranges.
        """
        vehicle = self.store.get_vehicle(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"Error: vehicle with ID '{vehicle_id}' not found")
        if not vehicle.is_listed:
            raise VehicleUnavailableError(details={"vehicle_id": vehicle.vehicle_id, "status": vehicle.status})

        start, end = self.pricing.validate_range(start_date, end_date)
        quote = self.pricing.compute_quote(
            vehicle, start, end,
            pickup=bool(pickup_location), dropoff=bool(dropoff_location),
        )

        now = self.clock()
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            vehicle_id=vehicle.vehicle_id,
            renter_id=str(renter_id),
            start_date=start,
            end_date=end,
            days=quote.days,
            base_price=quote.base_price,
            platform_fee=quote.platform_fee,
            extras=quote.extras,
            total_price=quote.total_price,
            created_at=now,
            pickup_location=pickup_location or None,
            dropoff_location=dropoff_location or None,
        )
        saved = self.store.reserve_booking(booking, stale_before=now - self.pending_timeout, now=now)
        logger.info("Booking %s created (pending) for vehicle %s %s..%s total=%s",
                    saved.booking_id, saved.vehicle_id, start, end, saved.total_price)
        return saved, quote

    # ---------- confirm ----------
    def confirm(self, booking_id: str, payment: Payment) -> Booking:
        """
        pending -> confirmed, binding the booking to its captured payment.
        Repeating the call with the same payment is a no-op.
        """
        if payment.status != PaymentStatus.CAPTURED or payment.booking_id != booking_id:
            raise InvalidStateError(
                "Booking can only be confirmed by its own captured payment",
                details={"payment_id": payment.payment_id, "payment_status": payment.status},
            )
        now = self.clock()
        outcome = []

        def _confirm(b: Booking):
            if b.status == BookingStatus.CONFIRMED and b.payment_id == payment.payment_id:
                outcome.append("duplicate")
                return
            if b.status == BookingStatus.EXPIRED:
                outcome.append("expired")
                return
            if self.is_stale(b, now):
                b.status = BookingStatus.EXPIRED
                b.expired_at = now
                outcome.append("expired")
                return
            assert_transition(b.status, BookingStatus.CONFIRMED)
            b.status = BookingStatus.CONFIRMED
            b.confirmed_at = now
            b.payment_id = payment.payment_id
            b.invoice_no = f"INV-{self._today():%Y%m%d}-{b.booking_id[:8].upper()}"

        booking = self.store.mutate_booking(booking_id, _confirm)
        if "expired" in outcome:
            logger.warning("Booking %s expired before payment %s could confirm it", booking_id, payment.payment_id)
            raise StaleBookingError(details={"booking_id": booking_id, "created_at": booking.created_at.isoformat()})
        if not outcome:
            logger.info("Booking %s confirmed by payment %s (%s)", booking_id, payment.payment_id, booking.invoice_no)
        return booking

    # ---------- cancel ----------
    def cancel(self, booking_id: str, actor: Actor) -> tuple[Booking, Optional[str]]:
        """
        Cancel a booking before it starts. Only the renter or an admin may do this.

        From confirmed, a refund is initiated and its id returned; the gateway
        call itself runs in the background, so this returns as soon as the
        booking and the 'initiated' refund are recorded.
        """
        booking = self.get(booking_id)
        if not actor.may_manage(booking):
            raise Unauthorized(details={"booking_id": booking_id, "actor_id": actor.user_id})

        captured = [p for p in self.store.payments_for_booking(booking_id) if p.status == PaymentStatus.CAPTURED]
        today = self._today()
        now = self.clock()
        previous = []

        def _cancel(b: Booking):
            if b.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
                raise NotCancellableError(
                    f"Booking is already {b.status}",
                    details={"booking_id": b.booking_id, "status": b.status},
                )
            if b.status == BookingStatus.PENDING and captured:
                raise NotCancellableError(
                    "Payment was captured; booking confirmation is in progress",
                    details={"booking_id": b.booking_id, "status": b.status},
                )
            if today >= b.start_date:
                raise NotCancellableError(
                    "Booking has already started",
                    details={"booking_id": b.booking_id, "start_date": b.start_date.isoformat()},
                )
            assert_transition(b.status, BookingStatus.CANCELLED)
            previous.append(b.status)
            b.status = BookingStatus.CANCELLED
            b.cancelled_at = now
            b.cancelled_by = actor.user_id

        booking = self.store.mutate_booking(booking_id, _cancel)
        logger.info("Booking %s cancelled by %s (was %s)", booking_id, actor.user_id, previous[0])

        refund_id = None
        if previous[0] == BookingStatus.CONFIRMED and booking.payment_id:
            payment = self.store.get_payment(booking.payment_id)
            refund_id = self.refunds.initiate_refund(payment)
        return booking, refund_id

    # ---------- complete ----------
    def complete(self, booking_id: str) -> Booking:
        """confirmed -> completed once end_date has passed. Idempotent."""
        today = self._today()
        now = self.clock()
        changed = []

        def _complete(b: Booking):
            if b.status == BookingStatus.COMPLETED:
                return
            assert_transition(b.status, BookingStatus.COMPLETED)
            if today < b.end_date:
                raise InvalidStateError(
                    "Booking has not ended yet",
                    details={"booking_id": b.booking_id, "end_date": b.end_date.isoformat()},
                )
            b.status = BookingStatus.COMPLETED
            b.completed_at = now
            changed.append(True)

        booking = self.store.mutate_booking(booking_id, _complete)
        if changed:
            logger.info("Booking %s completed", booking_id)
        return booking

    # ---------- housekeeping ----------
    def expire_if_stale(self, booking_id: str) -> Booking:
        """Expire the booking if its payment window elapsed; reads only otherwise."""
        now = self.clock()
        booking = self.get(booking_id)
        if not self.is_stale(booking, now):
            return booking

        def _expire(b: Booking):
            if self.is_stale(b, now):
                b.status = BookingStatus.EXPIRED
                b.expired_at = now

        return self.store.mutate_booking(booking_id, _expire)

    def expire_stale(self) -> list[str]:
        """Release every pending booking whose payment window has elapsed."""
        expired = []
        now = self.clock()
        for b in self.store.list_bookings(statuses={BookingStatus.PENDING}):
            if not self.is_stale(b, now):
                continue
            if self.expire_if_stale(b.booking_id).status == BookingStatus.EXPIRED:
                expired.append(b.booking_id)
        if expired:
            logger.info("Expired %d stale pending booking(s): %s", len(expired), ", ".join(expired))
        return expired

    def complete_finished(self) -> list[str]:
        """Complete every confirmed booking whose end date has passed."""
        today = self._today()
        done = []
        for b in self.store.list_bookings(statuses={BookingStatus.CONFIRMED}):
            if today >= b.end_date:
                self.complete(b.booking_id)
                done.append(b.booking_id)
        return done

    # ---------- polling ----------
    def describe(self, booking_id: str) -> dict:
        """Booking + payment attempts + refund progress, as served to polling clients."""
        booking = self.expire_if_stale(booking_id)
        payments = self.store.payments_for_booking(booking_id)
        data = booking.to_dict()
        data["payments"] = [p.to_dict() for p in payments]
        data["refund"] = self.refunds.refund_view(booking_id).to_dict()
        return data

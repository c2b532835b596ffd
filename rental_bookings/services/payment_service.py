"""Gateway orders, payment signature verification and capture."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

from rental_bookings.exceptions import (
    InvalidStateError,
    SignatureMismatchError,
    StaleBookingError,
    StateError,
)
from rental_bookings.models.booking import Payment
from rental_bookings.services.booking_service import BookingService
from rental_bookings.services.common import utcnow
from rental_bookings.services.gateway import PaymentGateway, call_with_retries
from rental_bookings.services.refund_service import RefundService
from rental_bookings.utils.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_GATEWAY_BACKOFF_SECONDS,
    DEFAULT_GATEWAY_MAX_RETRIES,
    BookingStatus,
    PaymentStatus,
)
from rental_bookings.utils.security import payment_signature_payload, verify_signature

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Ties gateway orders to bookings and turns verified payments into
    confirmed bookings.

    Client-reported success is never trusted on its own: the checkout
    signature is recomputed from the gateway secret and compared before
    anything is captured.
    """

    def __init__(
            self,
            store,
            gateway: PaymentGateway,
            bookings: BookingService,
            refunds: RefundService,
            key_secret: str,
            currency: str = DEFAULT_CURRENCY,
            max_retries: int = DEFAULT_GATEWAY_MAX_RETRIES,
            backoff: float = DEFAULT_GATEWAY_BACKOFF_SECONDS,
            clock: Optional[Callable[[], datetime]] = None,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.bookings = bookings
        self.refunds = refunds
        self.key_secret = key_secret
        self.currency = currency
        self.max_retries = max_retries
        self.backoff = backoff
        self.clock = clock or utcnow
        self.sleep = sleep

    # ---------- orders ----------
    def create_order(self, booking_id: str) -> str:
        """
        Open a gateway order for the booking's total and record it as a
        `created` payment. Gateway failures are retried with backoff; when
        retries run out GatewayUnavailableError surfaces and nothing is written.
        """
        booking = self.bookings.get(booking_id)
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(
                f"Cannot pay for a {booking.status} booking",
                details={"booking_id": booking_id, "status": booking.status},
            )
        if self.bookings.is_stale(booking):
            self.bookings.expire_if_stale(booking_id)
            raise StaleBookingError(details={"booking_id": booking_id})

        receipt = f"rcpt_{booking_id[:8]}_{int(self.clock().timestamp())}"
        order_id = call_with_retries(
            lambda: self.gateway.create_order(booking.total_price, self.currency, receipt),
            retries=self.max_retries, backoff=self.backoff, sleep=self.sleep,
            what=f"order for booking {booking_id}",
        )
        payment = self.store.add_payment(Payment(
            payment_id=str(uuid.uuid4()),
            booking_id=booking_id,
            gateway_order_id=order_id,
            amount=booking.total_price,
            currency=self.currency,
            created_at=self.clock(),
        ))
        logger.info("Order %s created for booking %s (%s %s)", order_id, booking_id, payment.amount, self.currency)
        return order_id

    def _uncaptured_attempts(self, booking_id: str) -> list[Payment]:
        """
        Attempts a genuine checkout callback may still settle, newest first.
        A `failed` attempt stays eligible: a forged callback can fail an order
        the gateway has already auto-captured.
        """
        attempts = [p for p in self.store.payments_for_booking(booking_id)
                    if p.status in (PaymentStatus.CREATED, PaymentStatus.FAILED)]
        if not attempts:
            raise InvalidStateError(
                "No open payment order for this booking",
                details={"booking_id": booking_id},
            )
        return list(reversed(attempts))

    # ---------- capture ----------
    def verify_and_capture(self, gateway_payment_id: str, gateway_signature: str, booking_id: str) -> bool:
        """
        Verify the checkout signature and confirm the booking.

        Safe under at-least-once delivery: a repeat for a booking already
        confirmed by the same gateway payment returns True without side
        effects. A bad signature fails the payment attempt and leaves the
        booking pending so the renter can retry with a fresh order.
        """
        booking = self.bookings.get(booking_id)
        if booking.status == BookingStatus.CONFIRMED:
            bound = self.store.get_payment(booking.payment_id) if booking.payment_id else None
            if bound is not None and bound.gateway_payment_id == gateway_payment_id:
                logger.info("Duplicate capture for booking %s ignored", booking_id)
                return True
            raise InvalidStateError(
                "Booking is already confirmed by another payment",
                details={"booking_id": booking_id},
            )

        already = [p for p in self.store.payments_for_booking(booking_id)
                   if p.status == PaymentStatus.CAPTURED and p.gateway_payment_id == gateway_payment_id]
        if already:
            # redelivery racing the first capture: confirm is idempotent for the same payment
            self.bookings.confirm(booking_id, already[-1])
            return True

        attempts = self._uncaptured_attempts(booking_id)
        payment = next((
            p for p in attempts
            if verify_signature(self.key_secret,
                                payment_signature_payload(p.gateway_order_id, gateway_payment_id),
                                gateway_signature)
        ), None)
        if payment is None:
            open_ = [p for p in attempts if p.status == PaymentStatus.CREATED]
            if open_:
                self._fail(open_[0], gateway_payment_id, "signature mismatch")
            raise SignatureMismatchError(details={
                "booking_id": booking_id,
                "payment_id": open_[0].payment_id if open_ else None,
            })

        now = self.clock()
        duplicate = []

        def _capture(p: Payment):
            if p.status == PaymentStatus.CAPTURED and p.gateway_payment_id == gateway_payment_id:
                duplicate.append(True)
                return
            if p.status not in (PaymentStatus.CREATED, PaymentStatus.FAILED):
                raise InvalidStateError(
                    f"Payment is already {p.status}",
                    details={"payment_id": p.payment_id, "status": p.status},
                )
            if p.status == PaymentStatus.FAILED:
                logger.warning("Payment %s failed earlier but now carries a valid signature; capturing",
                               p.payment_id)
            p.status = PaymentStatus.CAPTURED
            p.gateway_payment_id = gateway_payment_id
            p.failure_reason = None
            p.captured_at = now

        payment = self.store.mutate_payment(payment.payment_id, _capture)
        if not duplicate:
            logger.info("Payment %s captured (%s) for booking %s", payment.payment_id, gateway_payment_id, booking_id)

        try:
            self.bookings.confirm(booking_id, payment)
        except StateError as e:
            # money was taken but the booking can no longer be confirmed
            logger.error("Captured payment %s cannot confirm booking %s (%s); refunding",
                         payment.payment_id, booking_id, e.message)
            self.refunds.initiate_refund(payment, reason="confirmation_failed")
            raise
        return True

    def _fail(self, payment: Payment, gateway_payment_id: str, reason: str) -> None:
        def _mark(p: Payment):
            if p.status == PaymentStatus.CREATED:
                p.status = PaymentStatus.FAILED
                p.gateway_payment_id = gateway_payment_id
                p.failure_reason = reason

        self.store.mutate_payment(payment.payment_id, _mark)
        logger.warning("Payment %s for booking %s failed: %s", payment.payment_id, payment.booking_id, reason)

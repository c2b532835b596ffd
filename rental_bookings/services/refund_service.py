"""Refund initiation and forward-only reconciliation of gateway refund updates."""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from rental_bookings.exceptions import (
    InvalidStateError,
    ReconciliationAnomaly,
    RegressionError,
    UnknownRefundError,
)
from rental_bookings.models.booking import Payment
from rental_bookings.services.common import utcnow
from rental_bookings.services.gateway import PaymentGateway, call_with_retries
from rental_bookings.utils.constants import (
    DEFAULT_GATEWAY_BACKOFF_SECONDS,
    DEFAULT_GATEWAY_MAX_RETRIES,
    DEFAULT_MARKET_TIMEZONE,
    DEFAULT_REFUND_POLL_INTERVAL_SECONDS,
    REFUND_ORDER,
    TERMINAL_REFUND_STATES,
    PaymentStatus,
    RefundStatus,
)
from rental_bookings.utils.filters import fmt_iso_local

logger = logging.getLogger(__name__)

KNOWN_REFUND_STATES = set(REFUND_ORDER) | {RefundStatus.FAILED}


@dataclass(frozen=True)
class RefundView:
    """What a polling client needs to decide whether to keep polling."""
    status: str
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    initiated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    poll_after_seconds: Optional[int] = None
    tz_name: str = DEFAULT_MARKET_TIMEZONE

    @property
    def in_flight(self) -> bool:
        return self.status in (RefundStatus.INITIATED, RefundStatus.PROCESSED)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_REFUND_STATES

    def to_dict(self) -> dict:
        return {
            "refund_status": self.status,
            "refund_id": self.refund_id,
            "refund_amount": float(self.amount) if self.amount is not None else None,
            "initiated_at": self.initiated_at.isoformat() if self.initiated_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "initiated_at_local": fmt_iso_local(self.initiated_at, tz_name=self.tz_name),
            "refunded_at_local": fmt_iso_local(self.refunded_at, tz_name=self.tz_name),
            "in_flight": self.in_flight,
            "terminal": self.terminal,
            "poll_after_seconds": self.poll_after_seconds,
        }


class RefundService:
    """
    Owns Payment.refund_* fields.

    Initiation is recorded synchronously; the gateway refund call runs on the
    executor so cancellation never waits for the gateway. Gateway progress
    arrives through `record_gateway_update`, which only ever moves the refund
    forward and absorbs anything else as a reconciliation anomaly.
    """

    def __init__(
            self,
            store,
            gateway: PaymentGateway,
            executor: Optional[Executor] = None,
            max_retries: int = DEFAULT_GATEWAY_MAX_RETRIES,
            backoff: float = DEFAULT_GATEWAY_BACKOFF_SECONDS,
            poll_interval: int = DEFAULT_REFUND_POLL_INTERVAL_SECONDS,
            tz_name: str = DEFAULT_MARKET_TIMEZONE,
            clock: Optional[Callable[[], datetime]] = None,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="refunds")
        self.max_retries = max_retries
        self.backoff = backoff
        self.poll_interval = poll_interval
        self.tz_name = tz_name
        self.clock = clock or utcnow
        self.sleep = sleep

    # ---------- initiation ----------
    def initiate_refund(self, payment: Payment, reason: str = "cancellation") -> str:
        """
        Mark a captured payment's refund as initiated and hand the gateway call
        to the executor. Repeated calls return the existing refund id.
        """
        now = self.clock()
        new_refund_id = f"rfnd_{uuid.uuid4().hex[:16]}"
        started = []

        def _start(p: Payment):
            if p.status != PaymentStatus.CAPTURED:
                raise InvalidStateError(
                    "Only captured payments can be refunded",
                    details={"payment_id": p.payment_id, "status": p.status},
                )
            if p.refund_status != RefundStatus.NOT_REQUESTED:
                return
            p.refund_status = RefundStatus.INITIATED
            p.refund_id = new_refund_id
            p.refund_amount = p.amount
            p.refund_initiated_at = now
            p.refund_history.append({"status": RefundStatus.INITIATED, "at": now, "reason": reason})
            started.append(True)

        updated = self.store.mutate_payment(payment.payment_id, _start)
        if not started:
            logger.info("Refund already requested for payment %s (%s)", updated.payment_id, updated.refund_id)
            return updated.refund_id

        logger.info("Refund %s initiated for payment %s (booking %s, %s %s)",
                    updated.refund_id, updated.payment_id, updated.booking_id, updated.refund_amount, reason)
        future = self.executor.submit(self._dispatch, updated.payment_id)
        future.add_done_callback(lambda f: self._dispatch_done(f, updated.refund_id))
        return updated.refund_id

    def _dispatch(self, payment_id: str) -> None:
        """Background job: ask the gateway for the refund and record the outcome."""
        payment = self.store.get_payment(payment_id)
        try:
            result = call_with_retries(
                lambda: self.gateway.refund(payment.gateway_payment_id, payment.refund_amount),
                retries=self.max_retries, backoff=self.backoff, sleep=self.sleep,
                what=f"refund {payment.refund_id}",
            )
        except Exception:
            # a refund that never reached the gateway is recorded as failed
            logger.exception("Refund %s could not be submitted to the gateway", payment.refund_id)
            self.record_gateway_update(payment.refund_id, RefundStatus.FAILED)
            return

        def _link(p: Payment):
            p.gateway_refund_id = result.refund_id

        self.store.mutate_payment(payment_id, _link)
        logger.info("Refund %s accepted by gateway as %s", payment.refund_id, result.refund_id)
        if result.status != RefundStatus.INITIATED:
            self.record_gateway_update(payment.refund_id, result.status)
        self._replay_unmatched(result.refund_id)

    def _dispatch_done(self, future, refund_id: str) -> None:
        """Surface a dispatch job that died outside its own error handling."""
        if future.cancelled():
            logger.warning("Refund %s dispatch was cancelled before it ran", refund_id)
            return
        exc = future.exception()
        if exc is None:
            return
        logger.error("Refund %s dispatch crashed; refund left as recorded", refund_id, exc_info=exc)
        self.store.record_anomaly({
            "kind": type(exc).__name__,
            "refund_id": refund_id,
            "status": None,
            "message": f"Refund dispatch crashed: {exc}",
            "details": {},
            "at": self.clock().isoformat(),
        })

    def close(self) -> None:
        """Shut down the executor this service created (injected ones are left alone)."""
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    # ---------- gateway progress ----------
    def record_gateway_update(self, refund_id: str, new_status: str,
                              refunded_at: Optional[datetime] = None) -> bool:
        """
        Apply a webhook/polling update. Returns True when the status advanced,
        False for duplicates and for absorbed anomalies (never raises them).
        """
        try:
            return self._advance(refund_id, new_status, refunded_at)
        except ReconciliationAnomaly as e:
            logger.warning("Ignored refund update %s -> %s: %s", refund_id, new_status, e.message)
            unmatched = isinstance(e, UnknownRefundError)
            self.store.record_anomaly({
                "kind": type(e).__name__,
                "refund_id": refund_id,
                "status": new_status,
                "refunded_at": refunded_at.isoformat() if refunded_at else None,
                "message": e.message,
                "details": e.details,
                "at": self.clock().isoformat(),
                "unmatched": unmatched,
            })
            if unmatched and refund_id and self.store.find_payment_by_refund(refund_id) is not None:
                # linked while this update was being recorded
                self._replay_unmatched(refund_id)
            return False

    def _replay_unmatched(self, refund_id: str) -> None:
        """Apply updates that arrived for `refund_id` before it was linked to a payment."""
        for entry in self.store.claim_unmatched_updates(refund_id):
            at = entry.get("refunded_at")
            logger.info("Replaying early refund update %s -> %s", refund_id, entry["status"])
            self.record_gateway_update(refund_id, entry["status"], datetime.fromisoformat(at) if at else None)

    def _advance(self, refund_id: str, new_status: str, refunded_at: Optional[datetime]) -> bool:
        if new_status not in KNOWN_REFUND_STATES or new_status == RefundStatus.NOT_REQUESTED:
            raise ReconciliationAnomaly(f"Unknown refund status {new_status!r}")
        payment = self.store.find_payment_by_refund(refund_id)
        if payment is None:
            raise UnknownRefundError(f"Unknown refund id {refund_id!r}", details={"refund_id": refund_id})

        now = self.clock()
        changed = []

        def _apply(p: Payment):
            current = p.refund_status
            if current == new_status:
                return
            if current in TERMINAL_REFUND_STATES or current == RefundStatus.NOT_REQUESTED:
                raise RegressionError(
                    f"Refund is {current}; cannot move to {new_status}",
                    details={"current": current, "received": new_status},
                )
            if new_status != RefundStatus.FAILED and REFUND_ORDER[new_status] < REFUND_ORDER[current]:
                raise RegressionError(
                    f"Refund already {current}; {new_status} arrived out of order",
                    details={"current": current, "received": new_status},
                )
            p.refund_status = new_status
            if new_status in (RefundStatus.PROCESSED, RefundStatus.COMPLETED):
                p.refunded_at = refunded_at or now
            p.refund_history.append({"status": new_status, "at": now})
            changed.append(current)

        updated = self.store.mutate_payment(payment.payment_id, _apply)
        if not changed:
            logger.debug("Duplicate refund update %s -> %s", refund_id, new_status)
            return False
        logger.info("Refund %s: %s -> %s", updated.refund_id, changed[0], new_status)
        return True

    # ---------- polling ----------
    def refund_view(self, booking_id: str) -> RefundView:
        captured = [p for p in self.store.payments_for_booking(booking_id) if p.status == PaymentStatus.CAPTURED]
        if not captured:
            return RefundView(status=RefundStatus.NOT_REQUESTED, tz_name=self.tz_name)
        p = captured[-1]
        in_flight = p.refund_status in (RefundStatus.INITIATED, RefundStatus.PROCESSED)
        return RefundView(
            status=p.refund_status,
            refund_id=p.refund_id,
            amount=p.refund_amount,
            initiated_at=p.refund_initiated_at,
            refunded_at=p.refunded_at,
            poll_after_seconds=self.poll_interval if in_flight else None,
            tz_name=self.tz_name,
        )

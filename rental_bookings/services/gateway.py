"""
Payment gateway seam.

`PaymentGateway` is what the orchestrator and refund tracker talk to;
`RazorpayGateway` adapts the razorpay SDK client to it. Amounts cross this
seam as Decimal rupees and are converted to paise only inside the adapter.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError

from rental_bookings.exceptions import ExternalServiceError, GatewayUnavailableError, ValidationError
from rental_bookings.utils.constants import RefundStatus

logger = logging.getLogger(__name__)

# Razorpay refund states / webhook events -> our refund pipeline.
# Razorpay has no state after "processed": the money has left, so it is final.
RAZORPAY_REFUND_STATES = {
    "pending": RefundStatus.INITIATED,
    "created": RefundStatus.INITIATED,
    "processed": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
}
RAZORPAY_REFUND_EVENTS = {
    "refund.created": RefundStatus.INITIATED,
    "refund.processed": RefundStatus.COMPLETED,
    "refund.failed": RefundStatus.FAILED,
}


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    status: str  # one of RefundStatus


class PaymentGateway:
    """Interface of the external payment processor."""

    key_id: str = ""

    def create_order(self, amount: Decimal, currency: str, receipt: str) -> str:
        raise NotImplementedError

    def refund(self, payment_id: str, amount: Decimal) -> GatewayRefund:
        raise NotImplementedError


def to_paise(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class RazorpayGateway(PaymentGateway):
    """PaymentGateway backed by the razorpay SDK (orders auto-capture)."""

    def __init__(self, key_id: str, key_secret: str, client=None):
        self.key_id = key_id
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except BadRequestError as e:
            raise ValidationError(f"Gateway rejected {what}: {e}") from e
        except (ServerError, GatewayError, OSError) as e:
            # requests' transport errors derive from OSError
            raise GatewayUnavailableError(f"Gateway error during {what}: {e}") from e

    def create_order(self, amount: Decimal, currency: str, receipt: str) -> str:
        order = self._call("order creation", self.client.order.create, data={
            "amount": to_paise(amount),
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        })
        return order["id"]

    def refund(self, payment_id: str, amount: Decimal) -> GatewayRefund:
        resp = self._call("refund", self.client.payment.refund, payment_id, {"amount": to_paise(amount)})
        return GatewayRefund(
            refund_id=resp["id"],
            status=RAZORPAY_REFUND_STATES.get(resp.get("status"), RefundStatus.INITIATED),
        )


def parse_refund_event(body: dict) -> tuple[Optional[str], Optional[str], Optional[datetime]]:
    """
    Normalise a refund webhook body to (refund_id, status, refunded_at).

    Accepts our own shape {"refund_id", "status", "refunded_at"} or a Razorpay
    `refund.*` event. Unknown shapes yield (None, None, None).
    """
    if "event" in body:
        status = RAZORPAY_REFUND_EVENTS.get(body.get("event"))
        entity = ((body.get("payload") or {}).get("refund") or {}).get("entity") or {}
        ts = entity.get("created_at")
        refunded_at = parse_timestamp(ts) if status != RefundStatus.INITIATED else None
        return entity.get("id"), status, refunded_at

    return body.get("refund_id"), body.get("status"), parse_timestamp(body.get("refunded_at"))


def parse_timestamp(value) -> Optional[datetime]:
    """
    Accept an ISO-8601 string or epoch seconds (Razorpay's own format) and
    return an aware UTC datetime. Anything else is a ValidationError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid refunded_at {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Invalid refunded_at {value!r}") from None
    if not isinstance(value, str):
        raise ValidationError(f"Invalid refunded_at {value!r}")
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid refunded_at {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def call_with_retries(fn: Callable, *, retries: int, backoff: float,
                      sleep: Callable[[float], None] = time.sleep, what: str = "gateway call"):
    """
    Run `fn`, retrying ExternalServiceError up to `retries` extra times with
    exponential backoff. The last error is re-raised as GatewayUnavailableError.
    Must never be called while holding a store lock.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except ExternalServiceError as e:
            if attempt >= retries:
                logger.error("%s failed after %d attempts: %s", what, attempt + 1, e)
                raise GatewayUnavailableError(
                    f"Payment gateway unavailable ({what})",
                    details={"attempts": attempt + 1},
                ) from e
            delay = backoff * (2 ** attempt)
            logger.warning("%s failed (attempt %d), retrying in %.2fs: %s", what, attempt + 1, delay, e)
            sleep(delay)
            attempt += 1

"""Explicit wiring of the store, gateway and services."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from rental_bookings.services.booking_service import BookingService
from rental_bookings.services.gateway import PaymentGateway
from rental_bookings.services.payment_service import PaymentService
from rental_bookings.services.pricing_service import PricingService
from rental_bookings.services.refund_service import RefundService


@dataclass
class Engine:
    store: object
    gateway: PaymentGateway
    pricing: PricingService
    bookings: BookingService
    payments: PaymentService
    refunds: RefundService


def build_engine(config: dict, store, gateway: PaymentGateway,
                 executor: Optional[Executor] = None,
                 clock: Optional[Callable] = None,
                 sleep: Optional[Callable[[float], None]] = None) -> Engine:
    """Build every service from a Flask-style config mapping."""
    timeout = timedelta(minutes=int(config["PENDING_TIMEOUT_MINUTES"]))
    tz_name = config["MARKET_TIMEZONE"]
    retry = dict(
        max_retries=int(config["GATEWAY_MAX_RETRIES"]),
        backoff=float(config["GATEWAY_BACKOFF_SECONDS"]),
    )
    if sleep is not None:
        retry["sleep"] = sleep

    pricing = PricingService(store, fee_rate=config["PLATFORM_FEE_RATE"], tz_name=tz_name,
                             pending_timeout=timeout, clock=clock)
    refunds = RefundService(store, gateway, executor=executor,
                            poll_interval=int(config["REFUND_POLL_INTERVAL_SECONDS"]),
                            tz_name=tz_name, clock=clock, **retry)
    bookings = BookingService(store, pricing, refunds, pending_timeout=timeout, tz_name=tz_name, clock=clock)
    payments = PaymentService(store, gateway, bookings, refunds, key_secret=config["RZP_KEY_SECRET"],
                              currency=config["CURRENCY"], clock=clock, **retry)
    return Engine(store=store, gateway=gateway, pricing=pricing, bookings=bookings,
                  payments=payments, refunds=refunds)

import os
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("APP_ENV", "test")

from rental_bookings import create_app
from rental_bookings.exceptions import GatewayUnavailableError
from rental_bookings.models.store import Store
from rental_bookings.services.engine import build_engine
from rental_bookings.services.gateway import GatewayRefund, PaymentGateway
from rental_bookings.utils.constants import RefundStatus
from rental_bookings.utils.security import compute_signature, payment_signature_payload

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret",
    "PLATFORM_FEE_RATE": "0.02",
    "PENDING_TIMEOUT_MINUTES": 30,
    "REFUND_POLL_INTERVAL_SECONDS": 10,
    "GATEWAY_MAX_RETRIES": 3,
    "GATEWAY_BACKOFF_SECONDS": 0.5,
    "CURRENCY": "INR",
    "MARKET_TIMEZONE": "Asia/Kolkata",
    "RZP_KEY_ID": "rzp_test_key",
    "RZP_KEY_SECRET": KEY_SECRET,
    "WEBHOOK_SECRET": WEBHOOK_SECRET,
    "DATA_PATH": None,
    "LOG_LEVEL": "DEBUG",
}

# 11:30 in Asia/Kolkata, so the marketplace's "today" is 2025-05-20
START = datetime(2025, 5, 20, 6, 0, tzinfo=timezone.utc)


class Clock:
    """Mutable fake clock; call it to read the time."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InlineExecutor:
    """
    Executor stand-in. Runs jobs on submit, or queues them when `deferred`
    so a test can observe the state before the background work happens.
    """

    def __init__(self, deferred=False):
        self.deferred = deferred
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        if self.deferred:
            self.pending.append((future, fn, args, kwargs))
        else:
            self._run(future, fn, args, kwargs)
        return future

    def run_pending(self):
        jobs, self.pending = self.pending, []
        for future, fn, args, kwargs in jobs:
            self._run(future, fn, args, kwargs)

    @staticmethod
    def _run(future, fn, args, kwargs):
        future.set_running_or_notify_cancel()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)


class FakeGateway(PaymentGateway):
    """Counts calls; `fail_orders` / `fail_refunds` make the next N calls fail."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.order_calls = 0
        self.refund_calls = 0
        self.fail_orders = 0
        self.fail_refunds = 0
        self.refund_status = RefundStatus.INITIATED
        self.refunds = []

    def create_order(self, amount, currency, receipt):
        self.order_calls += 1
        if self.fail_orders:
            self.fail_orders -= 1
            raise GatewayUnavailableError("gateway timeout")
        return f"order_{self.order_calls}"

    def refund(self, payment_id, amount):
        self.refund_calls += 1
        if self.fail_refunds:
            self.fail_refunds -= 1
            raise GatewayUnavailableError("gateway timeout")
        self.refunds.append((payment_id, amount))
        return GatewayRefund(refund_id=f"rfnd_gw_{self.refund_calls}", status=self.refund_status)


def sign_payment(order_id, gateway_payment_id, secret=KEY_SECRET):
    return compute_signature(secret, payment_signature_payload(order_id, gateway_payment_id))


@pytest.fixture
def sign():
    return sign_payment


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def store():
    """Memory-only store, fresh per test."""
    return Store(None)


@pytest.fixture
def vehicle(store):
    vid = store.create_vehicle({
        "vehicle_id": "veh-1",
        "make": "Maruti Suzuki",
        "model": "Swift",
        "type": "car",
        "price_per_day": 1000,
        "pickup_charge": 200,
        "dropoff_charge": 300,
    })
    return store.get_vehicle(vid)


@pytest.fixture
def engine(store, gateway, executor, clock, sleeps, vehicle):
    return build_engine(TEST_CONFIG, store, gateway, executor=executor, clock=clock, sleep=sleeps.append)


@pytest.fixture
def book(engine, vehicle):
    """Factory: create a pending booking for `renter` over [start, end)."""

    def _book(renter="u1", start="2025-06-01", end="2025-06-04", **kwargs):
        booking, _ = engine.bookings.create(vehicle.vehicle_id, renter, start, end, **kwargs)
        return booking

    return _book


@pytest.fixture
def paid_booking(engine, book):
    """Factory: a booking taken through order + verified capture (confirmed)."""

    def _paid(renter="u1", start="2025-06-01", end="2025-06-04", gateway_payment_id="pay_1"):
        booking = book(renter=renter, start=start, end=end)
        order_id = engine.payments.create_order(booking.booking_id)
        engine.payments.verify_and_capture(
            gateway_payment_id, sign_payment(order_id, gateway_payment_id), booking.booking_id,
        )
        return engine.bookings.get(booking.booking_id)

    return _paid


@pytest.fixture
def app(store, gateway, executor, clock, vehicle):
    return create_app(config=TEST_CONFIG, store=store, gateway=gateway, executor=executor,
                      clock=clock, sleep=lambda s: None)


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def login(client):
    """Put an identity in the session, the way the auth provider would."""

    def _login(uid="u1", role="renter"):
        with client.session_transaction() as s:
            s["uid"] = uid
            s["role"] = role

    return _login

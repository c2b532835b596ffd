import atexit
import copy
import logging
import os
import pickle
import threading
import uuid
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable

from rental_bookings.exceptions import BookingNotFoundError, OverlapError, PaymentNotFoundError
from rental_bookings.models.booking import Booking, Payment
from rental_bookings.models.vehicle import Vehicle
from rental_bookings.services.common import overlap
from rental_bookings.utils.constants import BookingStatus, VehicleStatus

logger = logging.getLogger(__name__)

# ---- Paths ----
BASE_DIR = Path(__file__).resolve().parents[2]
DEFAULT_DATA_PATH = BASE_DIR / "data.pkl"


class Store:
    """
    In-process data store for vehicles, bookings and payments.

    All writes happen under one re-entrant lock, which makes the store the
    storage-level guard for booking exclusivity: `reserve_booking` checks for
    overlap and inserts in a single critical section. Readers always get deep
    copies, so the only way to change a record is through the store's own
    methods.

    When `path` is given, every write is persisted to a pickle file with an
    atomic replace; with `path=None` the store is memory-only.
    """

    _inst = None
    _inst_lock = threading.Lock()
    _atexit_registered = False

    def __init__(self, path: str | os.PathLike | None = None):
        self.path = str(path) if path else None
        self.vehicles: dict[str, Vehicle] = {}
        self.bookings: dict[str, Booking] = {}
        self.payments: dict[str, Payment] = {}
        self.anomalies: list[dict] = []
        self._rw = threading.RLock()

        if self.path:
            logger.info("[Store] Using file: %s", self.path)
            self._load()

            # Automatically save on exit (skipped in test environments)
            if not Store._atexit_registered and os.getenv("APP_ENV") != "test":
                atexit.register(self.save)
                Store._atexit_registered = True

    # ---------- Singleton ----------
    @classmethod
    def instance(cls, path: str | os.PathLike | None = None):
        """Return the process-wide default store (used only by create_app wiring)."""
        with cls._inst_lock:
            if cls._inst is None:
                cls._inst = Store(path or os.getenv("DATA_PATH") or DEFAULT_DATA_PATH)
        return cls._inst

    # ---------- Persistence ----------
    def _load(self):
        """Load data from the pickle file, or start empty if unavailable or invalid."""
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "rb") as f:
                data = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError, AttributeError) as e:
            logger.warning("[Store] Load failed (%s); starting empty.", e)
            return

        if isinstance(data, dict):
            self.vehicles = data.get("vehicles", {}) or {}
            self.bookings = data.get("bookings", {}) or {}
            self.payments = data.get("payments", {}) or {}
            self.anomalies = data.get("anomalies", []) or []
            logger.info(
                "[Store] Loaded: vehicles=%d, bookings=%d, payments=%d",
                len(self.vehicles), len(self.bookings), len(self.payments),
            )
        else:
            # Handle incompatible data format: backup the old file and start empty
            bak = self.path + ".bak"
            os.replace(self.path, bak)
            logger.warning("[Store] Incompatible store (%s); backed up to %s. Starting empty.",
                           type(data).__name__, bak)

    def _dump(self):
        """Write the in-memory data to the pickle file safely (atomic replace)."""
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = self.path + ".tmp"
        payload = {
            "vehicles": self.vehicles,
            "bookings": self.bookings,
            "payments": self.payments,
            "anomalies": self.anomalies,
        }
        with open(tmp, "wb") as f:
            pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def clear(self, vehicles: bool = False):
        """Drop bookings, payments and the anomaly log (and optionally vehicles)."""
        with self._rw:
            self.bookings.clear()
            self.payments.clear()
            self.anomalies.clear()
            if vehicles:
                self.vehicles.clear()
            self._dump()

    def save(self):
        """Thread-safe save method."""
        with self._rw:
            logger.debug("[Store] Saving to %s ...", self.path)
            self._dump()

    # ---------- Vehicles ----------
    def create_vehicle(self, data: dict) -> str:
        """Create a new vehicle record and return its ID."""
        with self._rw:
            vid = str(data.get("vehicle_id") or uuid.uuid4())
            self.vehicles[vid] = Vehicle(
                vehicle_id=vid,
                make=data.get("make", ""),
                model=data.get("model", ""),
                type=data.get("type", "car"),
                price_per_day=Decimal(str(data.get("price_per_day") or 0)),
                status=data.get("status", VehicleStatus.AVAILABLE),
                pickup_charge=Decimal(str(data.get("pickup_charge") or 0)),
                dropoff_charge=Decimal(str(data.get("dropoff_charge") or 0)),
            )
            self._dump()
            return vid

    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        """Get vehicle information by ID."""
        with self._rw:
            return copy.deepcopy(self.vehicles.get(str(vehicle_id)))

    # ---------- Bookings ----------
    def reserve_booking(self, booking: Booking, stale_before: datetime, now: datetime) -> Booking:
        """
        Insert `booking` unless it overlaps an active booking on the same vehicle.

        Pending bookings created at or before `stale_before` are expired first,
        which releases their dates. Raises OverlapError listing the clashing
        ranges; nothing is written in that case.
        """
        with self._rw:
            clashes = []
            for other in self.bookings.values():
                if other.vehicle_id != booking.vehicle_id or not other.holds_dates:
                    continue
                if other.status == BookingStatus.PENDING and other.created_at <= stale_before:
                    other.status = BookingStatus.EXPIRED
                    other.expired_at = now
                    logger.info("[Store] Expired stale pending booking %s", other.booking_id)
                    continue
                if overlap(booking.start_date, booking.end_date, other.start_date, other.end_date):
                    clashes.append({
                        "booking_id": other.booking_id,
                        "start_date": other.start_date.isoformat(),
                        "end_date": other.end_date.isoformat(),
                    })
            if clashes:
                # persist any expiries made above before rejecting
                self._dump()
                raise OverlapError(
                    "Date conflict with existing booking",
                    details={"vehicle_id": booking.vehicle_id, "conflicts": clashes},
                )
            self.bookings[booking.booking_id] = copy.deepcopy(booking)
            self._dump()
            return copy.deepcopy(booking)

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._rw:
            return copy.deepcopy(self.bookings.get(booking_id))

    def list_bookings(self, vehicle_id: str | None = None, renter_id: str | None = None,
                      statuses: Iterable[str] | None = None) -> list[Booking]:
        wanted = set(statuses) if statuses is not None else None
        with self._rw:
            out = [
                copy.deepcopy(b) for b in self.bookings.values()
                if (vehicle_id is None or b.vehicle_id == vehicle_id)
                and (renter_id is None or b.renter_id == renter_id)
                and (wanted is None or b.status in wanted)
            ]
        out.sort(key=lambda b: b.created_at)
        return out

    def mutate_booking(self, booking_id: str, fn: Callable[[Booking], None]) -> Booking:
        """
        Apply `fn` to a working copy of the booking and commit it atomically.
        `fn` may raise to abort; it must not perform network calls. Nothing is
        written when `fn` leaves the copy unchanged.
        """
        with self._rw:
            current = self.bookings.get(booking_id)
            if current is None:
                raise BookingNotFoundError(f"Error: booking '{booking_id}' not found")
            work = copy.deepcopy(current)
            fn(work)
            if work != current:
                self.bookings[booking_id] = work
                self._dump()
            return copy.deepcopy(work)

    # ---------- Payments ----------
    def add_payment(self, payment: Payment) -> Payment:
        with self._rw:
            self.payments[payment.payment_id] = copy.deepcopy(payment)
            self._dump()
            return copy.deepcopy(payment)

    def get_payment(self, payment_id: str) -> Payment | None:
        with self._rw:
            return copy.deepcopy(self.payments.get(payment_id))

    def payments_for_booking(self, booking_id: str) -> list[Payment]:
        """All payment attempts for a booking, oldest first."""
        with self._rw:
            out = [copy.deepcopy(p) for p in self.payments.values() if p.booking_id == booking_id]
        out.sort(key=lambda p: p.created_at)
        return out

    def find_payment_by_refund(self, refund_id: str) -> Payment | None:
        """Look a payment up by our refund id or by the gateway's refund id."""
        with self._rw:
            for p in self.payments.values():
                if refund_id and refund_id in (p.refund_id, p.gateway_refund_id):
                    return copy.deepcopy(p)
        return None

    def mutate_payment(self, payment_id: str, fn: Callable[[Payment], None]) -> Payment:
        """Same contract as mutate_booking, for payment rows."""
        with self._rw:
            current = self.payments.get(payment_id)
            if current is None:
                raise PaymentNotFoundError(f"Error: payment '{payment_id}' not found")
            work = copy.deepcopy(current)
            fn(work)
            if work != current:
                self.payments[payment_id] = work
                self._dump()
            return copy.deepcopy(work)

    # ---------- Reconciliation audit ----------
    def record_anomaly(self, entry: dict) -> None:
        with self._rw:
            self.anomalies.append(dict(entry))
            self._dump()

    def list_anomalies(self) -> list[dict]:
        with self._rw:
            return [dict(a) for a in self.anomalies]

    def claim_unmatched_updates(self, refund_id: str) -> list[dict]:
        """
        Return the not-yet-replayed updates recorded for an unknown `refund_id`,
        marking them replayed. Each entry is handed out at most once.
        """
        with self._rw:
            claimed = []
            for a in self.anomalies:
                if a.get("unmatched") and not a.get("replayed") and a.get("refund_id") == refund_id:
                    a["replayed"] = True
                    claimed.append(dict(a))
            if claimed:
                self._dump()
            return claimed

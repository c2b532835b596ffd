from dataclasses import dataclass
from decimal import Decimal

from rental_bookings.utils.constants import VehicleStatus


@dataclass
class Vehicle:
    """
    Read-only view of a listed vehicle. The listing itself is owned by the
    data store; the booking engine only needs the price and whether the host
    has the listing switched on.
    """
    vehicle_id: str
    make: str
    model: str
    type: str  # "car" | "bike" | "scooter"
    price_per_day: Decimal
    status: str = VehicleStatus.AVAILABLE
    pickup_charge: Decimal = Decimal("0")
    dropoff_charge: Decimal = Decimal("0")

    @property
    def is_listed(self) -> bool:
        return self.status == VehicleStatus.AVAILABLE

    def price_for_days(self, days: int) -> Decimal:
        """Rental cost before the platform fee and delivery extras."""
        return self.price_per_day * days

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "make": self.make,
            "model": self.model,
            "type": self.type,
            "price_per_day": float(self.price_per_day),
            "status": self.status,
            "pickup_charge": float(self.pickup_charge),
            "dropoff_charge": float(self.dropoff_charge),
        }

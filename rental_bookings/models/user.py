from dataclasses import dataclass

from rental_bookings.utils.constants import Role


@dataclass
class Actor:
    """
    Verified identity handed over by the auth provider. The engine never
    authenticates anyone; it only decides what an already-known actor may do.
    """
    user_id: str
    role: str  # "renter" | "host" | "admin"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def may_manage(self, booking) -> bool:
        """Renters manage their own bookings; admins manage every booking."""
        return self.is_admin or booking.renter_id == self.user_id

from flask import Blueprint, current_app, jsonify

from ..utils.constants import Role
from ..utils.decorators import login_required, role_required

bp = Blueprint("staff", __name__, url_prefix="/staff")


def _engine():
    return current_app.extensions["rental_bookings"]


@bp.post("/bookings/<bid>/complete")
@login_required
@role_required(Role.ADMIN)
def complete_booking(bid):
    """Mark a finished booking completed (normally done by the scheduler)."""
    booking = _engine().bookings.complete(bid)
    return jsonify(booking.to_dict())


@bp.post("/bookings/expire")
@login_required
@role_required(Role.ADMIN)
def expire_bookings():
    """Release pending bookings whose payment window elapsed."""
    return jsonify({"expired": _engine().bookings.expire_stale()})


@bp.post("/bookings/complete-finished")
@login_required
@role_required(Role.ADMIN)
def complete_finished():
    return jsonify({"completed": _engine().bookings.complete_finished()})


@bp.get("/reconciliation")
@login_required
@role_required(Role.ADMIN)
def reconciliation():
    """Audit trail of absorbed out-of-order / unknown gateway updates."""
    return jsonify(_engine().store.list_anomalies())

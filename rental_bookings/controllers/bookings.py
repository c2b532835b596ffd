import logging

from flask import Blueprint, current_app, jsonify, request

from ..exceptions import Unauthorized, ValidationError, VehicleNotFoundError
from ..services.gateway import parse_refund_event
from ..utils.decorators import current_actor, login_required
from ..utils.security import verify_signature

logger = logging.getLogger(__name__)

bp = Blueprint("bookings", __name__, url_prefix="/api")


def _engine():
    return current_app.extensions["rental_bookings"]


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _require(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError("Missing required fields", details={"missing": missing})


def _owned_booking(booking_id):
    """Load a booking the current actor may act on (renter or admin)."""
    booking = _engine().bookings.get(booking_id)
    actor = current_actor()
    if not actor.may_manage(booking):
        raise Unauthorized(details={"booking_id": booking_id, "actor_id": actor.user_id})
    return booking


@bp.post("/quote")
def quote():
    """Price a date range without reserving it."""
    data = _payload()
    _require(data, "vehicle_id", "start_date", "end_date")
    eng = _engine()
    vehicle = eng.store.get_vehicle(data["vehicle_id"])
    if vehicle is None:
        raise VehicleNotFoundError(f"Error: vehicle with ID '{data['vehicle_id']}' not found")
    q = eng.pricing.compute_quote(
        vehicle, data["start_date"], data["end_date"],
        pickup=bool(data.get("pickup_location")), dropoff=bool(data.get("dropoff_location")),
    )
    return jsonify(q.to_dict())


@bp.get("/vehicles/<vid>/availability")
def availability(vid):
    """Whether [start_date, end_date) is free, plus the clashing ranges when it is not."""
    args = request.args
    _require(args, "start_date", "end_date")
    eng = _engine()
    vehicle = eng.store.get_vehicle(vid)
    if vehicle is None:
        raise VehicleNotFoundError(f"Error: vehicle with ID '{vid}' not found")
    start, end = eng.pricing.validate_range(args["start_date"], args["end_date"])
    conflicts = eng.pricing.conflicts(vid, start, end)
    return jsonify({
        "vehicle_id": vid,
        "vehicle": vehicle.to_dict(),
        "available": not conflicts,
        "conflicts": conflicts,
    })


@bp.post("/bookings")
@login_required
def create_booking():
    data = _payload()
    _require(data, "vehicle_id", "start_date", "end_date")
    booking, q = _engine().bookings.create(
        vehicle_id=data["vehicle_id"],
        renter_id=current_actor().user_id,
        start_date=data["start_date"],
        end_date=data["end_date"],
        pickup_location=data.get("pickup_location"),
        dropoff_location=data.get("dropoff_location"),
    )
    return jsonify({"booking": booking.to_dict(), "quote": q.to_dict()}), 201


@bp.get("/bookings/my-bookings")
@login_required
def my_bookings():
    items = _engine().bookings.bookings_for_renter(current_actor().user_id)
    return jsonify([b.to_dict() for b in items])


@bp.post("/bookings/<bid>/order")
@login_required
def create_order(bid):
    """Open a gateway checkout order for a pending booking."""
    booking = _owned_booking(bid)
    eng = _engine()
    order_id = eng.payments.create_order(bid)
    return jsonify({
        "booking_id": bid,
        "order_id": order_id,
        "amount": float(booking.total_price),
        "currency": current_app.config["CURRENCY"],
        "key_id": eng.gateway.key_id,
    }), 201


@bp.post("/bookings/<bid>/payment")
@login_required
def confirm_payment(bid):
    """Checkout callback: verify the gateway signature, capture, confirm."""
    _owned_booking(bid)
    data = _payload()
    payment_id = data.get("razorpay_payment_id") or data.get("gateway_payment_id")
    signature = data.get("razorpay_signature") or data.get("gateway_signature")
    if not payment_id or not signature:
        raise ValidationError("Payment verification data missing",
                              details={"required": ["razorpay_payment_id", "razorpay_signature"]})
    eng = _engine()
    eng.payments.verify_and_capture(payment_id, signature, bid)
    return jsonify(eng.bookings.describe(bid))


@bp.patch("/bookings/<bid>/cancel")
@login_required
def cancel_booking(bid):
    """Cancel now; any refund is tracked separately through GET /api/booking/<id>."""
    eng = _engine()
    booking, refund_id = eng.bookings.cancel(bid, current_actor())
    message = "Booking cancelled, refund initiated" if refund_id else "Booking cancelled"
    return jsonify({
        "message": message,
        "booking": booking.to_dict(),
        "refund": eng.refunds.refund_view(bid).to_dict(),
    })


@bp.get("/booking/<bid>")
@login_required
def booking_detail(bid):
    """Polling endpoint: booking, payment attempts and refund progress."""
    _owned_booking(bid)
    return jsonify(_engine().bookings.describe(bid))


@bp.post("/webhooks/refunds")
def refund_webhook():
    """Gateway refund callbacks. Out-of-order or duplicate deliveries are absorbed."""
    raw = request.get_data()
    signature = request.headers.get("X-Razorpay-Signature")
    if not verify_signature(current_app.config["WEBHOOK_SECRET"], raw, signature):
        logger.warning("Rejected refund webhook with bad signature")
        raise ValidationError("Invalid webhook signature")

    refund_id, status, refunded_at = parse_refund_event(request.get_json(silent=True) or {})
    if not refund_id or not status:
        return jsonify({"applied": False, "ignored": True})
    applied = _engine().refunds.record_gateway_update(refund_id, status, refunded_at)
    return jsonify({"applied": applied, "refund_id": refund_id, "status": status})

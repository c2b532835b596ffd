"""
End-to-end HTTP flow through the Flask app: quote, reserve, pay, cancel,
poll, refund webhooks and the staff endpoints.
"""
import json
from datetime import datetime, timezone

from rental_bookings.utils.security import compute_signature

DATES = {"vehicle_id": "veh-1", "start_date": "2025-06-01", "end_date": "2025-06-04"}


def _create(client, **overrides):
    resp = client.post("/api/bookings", json={**DATES, **overrides})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["booking"]


def _pay(client, sign, booking_id, gateway_payment_id="pay_1"):
    order = client.post(f"/api/bookings/{booking_id}/order").get_json()
    return client.post(f"/api/bookings/{booking_id}/payment", json={
        "razorpay_order_id": order["order_id"],
        "razorpay_payment_id": gateway_payment_id,
        "razorpay_signature": sign(order["order_id"], gateway_payment_id),
    })


def _webhook(client, body, secret=None):
    secret = secret or client.application.config["WEBHOOK_SECRET"]
    raw = json.dumps(body).encode()
    return client.post("/api/webhooks/refunds", data=raw, content_type="application/json",
                       headers={"X-Razorpay-Signature": compute_signature(secret, raw)})


def test_quote(client):
    resp = client.post("/api/quote", json={**DATES, "pickup_location": "Airport"})
    assert resp.status_code == 200
    assert resp.get_json() == {"days": 3, "base_price": 3000.0, "platform_fee": 60.0,
                               "extras": 200.0, "total_price": 3260.0}


def test_quote_missing_fields(client):
    resp = client.post("/api/quote", json={"vehicle_id": "veh-1"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "validation"
    assert body["details"]["missing"] == ["start_date", "end_date"]


def test_quote_unknown_vehicle(client):
    resp = client.post("/api/quote", json={**DATES, "vehicle_id": "nope"})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_availability(client, login):
    url = "/api/vehicles/veh-1/availability?start_date=2025-06-03&end_date=2025-06-05"
    assert client.get(url).get_json()["available"] is True
    login()
    b = _create(client)
    body = client.get(url).get_json()
    assert body["available"] is False
    assert body["conflicts"][0]["booking_id"] == b["id"]


def test_booking_requires_login(client):
    resp = client.post("/api/bookings", json=DATES)
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "authentication"


def test_double_booking_is_a_conflict(client, login):
    login("u1")
    first = _create(client)
    login("u2")
    resp = client.post("/api/bookings", json={**DATES, "start_date": "2025-06-02"})
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["error"] == "conflict"
    assert body["details"]["conflicts"][0]["booking_id"] == first["id"]


def test_past_dates_rejected(client, login):
    login()
    resp = client.post("/api/bookings", json={**DATES, "start_date": "2025-05-01"})
    assert resp.status_code == 400


def test_pay_then_poll(client, login, sign):
    login()
    b = _create(client)
    order = client.post(f"/api/bookings/{b['id']}/order")
    assert order.status_code == 201
    assert order.get_json()["key_id"] == "rzp_test_key"
    assert order.get_json()["amount"] == 3060.0

    resp = client.post(f"/api/bookings/{b['id']}/payment", json={
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign(order.get_json()["order_id"], "pay_1"),
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "confirmed"
    assert body["invoice_no"].startswith("INV-20250520-")
    assert body["payments"][0]["status"] == "captured"
    assert body["refund"]["refund_status"] == "not_requested"

    poll = client.get(f"/api/booking/{b['id']}").get_json()
    assert poll["status"] == "confirmed"


def test_bad_signature(client, login):
    login()
    b = _create(client)
    client.post(f"/api/bookings/{b['id']}/order")
    resp = client.post(f"/api/bookings/{b['id']}/payment", json={
        "razorpay_payment_id": "pay_1", "razorpay_signature": "forged",
    })
    assert resp.status_code == 400
    poll = client.get(f"/api/booking/{b['id']}").get_json()
    assert poll["status"] == "pending"
    assert poll["payments"][0]["status"] == "failed"


def test_genuine_payment_after_forged_callback(client, login, sign):
    login()
    b = _create(client)
    order = client.post(f"/api/bookings/{b['id']}/order").get_json()
    forged = client.post(f"/api/bookings/{b['id']}/payment", json={
        "razorpay_payment_id": "pay_1", "razorpay_signature": "forged",
    })
    assert forged.status_code == 400

    resp = client.post(f"/api/bookings/{b['id']}/payment", json={
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign(order["order_id"], "pay_1"),
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "confirmed"
    assert body["payments"][0]["status"] == "captured"


def test_payment_fields_required(client, login):
    login()
    b = _create(client)
    resp = client.post(f"/api/bookings/{b['id']}/payment", json={})
    assert resp.status_code == 400


def test_cancel_and_track_refund(client, login, sign):
    login()
    b = _create(client)
    assert _pay(client, sign, b["id"]).status_code == 200

    resp = client.patch(f"/api/bookings/{b['id']}/cancel")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["booking"]["status"] == "cancelled"
    assert body["refund"]["refund_status"] == "initiated"
    assert body["refund"]["poll_after_seconds"] == 10
    refund_id = body["refund"]["refund_id"]

    hook = _webhook(client, {"refund_id": refund_id, "status": "processed"})
    assert hook.get_json()["applied"] is True
    assert client.get(f"/api/booking/{b['id']}").get_json()["refund"]["refund_status"] == "processed"

    _webhook(client, {"refund_id": refund_id, "status": "completed"})
    refund = client.get(f"/api/booking/{b['id']}").get_json()["refund"]
    assert refund["refund_status"] == "completed"
    assert refund["terminal"] is True
    assert refund["poll_after_seconds"] is None

    # late, out-of-order delivery is acknowledged but ignored
    late = _webhook(client, {"refund_id": refund_id, "status": "processed"})
    assert late.status_code == 200
    assert late.get_json()["applied"] is False
    assert client.get(f"/api/booking/{b['id']}").get_json()["refund"]["refund_status"] == "completed"


def test_razorpay_refund_webhook(client, login, sign):
    login()
    b = _create(client)
    _pay(client, sign, b["id"])
    client.patch(f"/api/bookings/{b['id']}/cancel")

    resp = _webhook(client, {
        "event": "refund.processed",
        "payload": {"refund": {"entity": {"id": "rfnd_gw_1", "created_at": 1747818000}}},
    })
    assert resp.get_json()["applied"] is True

    refund = client.get(f"/api/booking/{b['id']}").get_json()["refund"]
    assert refund["refund_status"] == "completed"
    assert refund["terminal"] is True
    assert refund["poll_after_seconds"] is None


def test_webhook_with_epoch_timestamp(client, login, sign):
    login()
    b = _create(client)
    _pay(client, sign, b["id"])
    refund_id = client.patch(f"/api/bookings/{b['id']}/cancel").get_json()["refund"]["refund_id"]

    hook = _webhook(client, {"refund_id": refund_id, "status": "processed", "refunded_at": 1747818000})
    assert hook.get_json()["applied"] is True

    poll = client.get(f"/api/booking/{b['id']}")
    assert poll.status_code == 200
    refund = poll.get_json()["refund"]
    assert refund["refunded_at"] == "2025-05-21T09:00:00+00:00"
    assert refund["refunded_at_local"] == "21/05/2025 14:30"


def test_webhook_with_malformed_timestamp_rejected(client, login, sign):
    login()
    b = _create(client)
    _pay(client, sign, b["id"])
    refund_id = client.patch(f"/api/bookings/{b['id']}/cancel").get_json()["refund"]["refund_id"]

    hook = _webhook(client, {"refund_id": refund_id, "status": "processed", "refunded_at": {"at": 1}})
    assert hook.status_code == 400
    assert client.get(f"/api/booking/{b['id']}").get_json()["refund"]["refund_status"] == "initiated"


def test_webhook_signature_checked(client):
    resp = _webhook(client, {"refund_id": "r", "status": "processed"}, secret="wrong")
    assert resp.status_code == 400


def test_unrelated_webhook_ignored(client):
    resp = _webhook(client, {"event": "payment.captured", "payload": {}})
    assert resp.status_code == 200
    assert resp.get_json() == {"applied": False, "ignored": True}


def test_other_renter_cannot_see_or_cancel(client, login):
    login("u1")
    b = _create(client)
    login("u2")
    assert client.get(f"/api/booking/{b['id']}").status_code == 403
    assert client.patch(f"/api/bookings/{b['id']}/cancel").status_code == 403
    assert client.post(f"/api/bookings/{b['id']}/order").status_code == 403


def test_unknown_booking(client, login):
    login()
    assert client.get("/api/booking/missing").status_code == 404


def test_my_bookings(client, login):
    login("u1")
    b = _create(client)
    login("u2")
    assert client.get("/api/bookings/my-bookings").get_json() == []
    login("u1")
    assert [x["id"] for x in client.get("/api/bookings/my-bookings").get_json()] == [b["id"]]


def test_staff_routes_need_admin(client, login):
    login("u1", "renter")
    assert client.post("/staff/bookings/expire").status_code == 403
    assert client.get("/staff/reconciliation").status_code == 403


def test_staff_expire_and_complete(client, login, sign, clock):
    login("u1")
    paid = _create(client)
    _pay(client, sign, paid["id"])
    unpaid = _create(client, start_date="2025-06-10", end_date="2025-06-12")

    login("admin1", "admin")
    clock.advance(minutes=31)
    assert client.post("/staff/bookings/expire").get_json() == {"expired": [unpaid["id"]]}

    early = client.post(f"/staff/bookings/{paid['id']}/complete")
    assert early.status_code == 409
    assert early.get_json()["error"] == "state"

    clock.now = datetime(2025, 6, 4, 6, 0, tzinfo=timezone.utc)
    assert client.post("/staff/bookings/complete-finished").get_json() == {"completed": [paid["id"]]}
    done = client.post(f"/staff/bookings/{paid['id']}/complete")
    assert done.get_json()["status"] == "completed"


def test_staff_reconciliation_lists_anomalies(client, login):
    _webhook(client, {"refund_id": "rfnd_unknown", "status": "processed"})
    login("admin1", "admin")
    [entry] = client.get("/staff/reconciliation").get_json()
    assert entry["refund_id"] == "rfnd_unknown"
    assert entry["kind"] == "UnknownRefundError"

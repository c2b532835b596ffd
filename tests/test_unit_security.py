import hashlib
import hmac

from rental_bookings.utils.security import compute_signature, payment_signature_payload, verify_signature


def test_signature_is_hmac_sha256_hex():
    expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature("secret", "order_1|pay_1") == expected
    assert compute_signature("secret", b"order_1|pay_1") == expected


def test_payment_payload_format():
    assert payment_signature_payload("order_1", "pay_1") == "order_1|pay_1"


def test_verify_accepts_matching_signature():
    sig = compute_signature("secret", "order_1|pay_1")
    assert verify_signature("secret", "order_1|pay_1", sig)


def test_verify_rejects_tampering():
    sig = compute_signature("secret", "order_1|pay_1")
    assert not verify_signature("secret", "order_1|pay_2", sig)
    assert not verify_signature("other", "order_1|pay_1", sig)


def test_verify_fails_closed():
    assert not verify_signature("secret", "x", None)
    assert not verify_signature("secret", "x", "")
    assert not verify_signature("", "x", compute_signature("", "x"))

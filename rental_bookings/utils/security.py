import hashlib
import hmac


def compute_signature(secret: str, payload: str | bytes) -> str:
    """Hex HMAC-SHA256 of `payload`, the scheme the payment gateway signs with."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: str | bytes, provided: str | None) -> bool:
    """
    Constant-time check of a gateway-supplied signature.
    Fails closed: missing secret or signature never verifies.
    """
    if not secret or not provided:
        return False
    return hmac.compare_digest(compute_signature(secret, payload), str(provided))


def payment_signature_payload(order_id: str, payment_id: str) -> str:
    """Checkout signatures cover '<order_id>|<payment_id>'."""
    return f"{order_id}|{payment_id}"

"""HMAC primitives for Razorpay signatures and the admin gate."""

import hashlib
import hmac

from app.core.exceptions import ConfigurationError, SignatureInvalid


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        message,
        hashlib.sha256,
    ).hexdigest()


def verify_razorpay_webhook(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """Check X-Razorpay-Signature against HMAC-SHA256 of the raw body.

    Raises ConfigurationError when the secret is missing and SignatureInvalid
    on a missing or mismatching signature. Comparison is constant time.
    """
    if not secret or not secret.strip():
        raise ConfigurationError("Webhook secret not configured")
    if not signature:
        raise SignatureInvalid("Missing webhook signature", status_code=401)
    expected = hmac_sha256_hex(secret.strip(), payload)
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureInvalid("Invalid webhook signature", status_code=401)
    return True


def verify_razorpay_payment_signature(order_id: str, payment_id: str, signature: str, secret: str | None) -> bool:
    """Checkout signature: HMAC-SHA256(key_secret, "order_id|payment_id")."""
    if not secret or not secret.strip():
        raise ConfigurationError("Razorpay secret key is not configured")
    expected = hmac_sha256_hex(secret.strip(), f"{order_id}|{payment_id}".encode("utf-8"))
    if not hmac.compare_digest(expected, (signature or "").strip()):
        raise SignatureInvalid("Invalid payment signature")
    return True


def is_admin_email(email: str | None, admin_email: str | None) -> bool:
    if not email or not admin_email:
        return False
    return hmac.compare_digest(email.strip().lower(), admin_email.strip().lower())

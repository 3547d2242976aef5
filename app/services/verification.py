"""Checkout payment verification: HMAC signature, then the gateway's own word on status."""

from dataclasses import dataclass
from typing import Protocol

from app.core.exceptions import SignatureInvalid
from app.core.logging import get_logger
from app.core.security import verify_razorpay_payment_signature

log = get_logger(__name__)

ACCEPTED_STATUSES = frozenset({"captured", "authorized"})


class PaymentLookup(Protocol):
    async def fetch_payment(self, payment_id: str) -> dict: ...


@dataclass(frozen=True)
class VerifiedPayment:
    """What the gateway confirmed. amount_paise is the captured amount, in paise."""

    razorpay_order_id: str
    razorpay_payment_id: str
    status: str
    amount_paise: int | None = None
    currency: str | None = None


class PaymentVerifier:
    def __init__(self, gateway: PaymentLookup, key_secret: str | None):
        self.gateway = gateway
        self.key_secret = key_secret

    async def verify(self, razorpay_order_id: str, razorpay_payment_id: str, signature: str) -> VerifiedPayment:
        """Raise SignatureInvalid, ConfigurationError or VerificationUnavailable; never writes."""
        verify_razorpay_payment_signature(razorpay_order_id, razorpay_payment_id, signature, self.key_secret)
        payment = await self.gateway.fetch_payment(razorpay_payment_id)
        status = str(payment.get("status") or "").lower()
        if status not in ACCEPTED_STATUSES:
            log.info("payment_not_captured", payment_id=razorpay_payment_id, status=status)
            raise SignatureInvalid("Payment not captured")
        remote_order_id = payment.get("order_id")
        if remote_order_id and remote_order_id != razorpay_order_id:
            log.warning(
                "payment_order_mismatch",
                payment_id=razorpay_payment_id,
                claimed_order_id=razorpay_order_id,
                remote_order_id=remote_order_id,
            )
            raise SignatureInvalid("Payment does not belong to this order")
        return VerifiedPayment(
            razorpay_order_id=razorpay_order_id,
            razorpay_payment_id=razorpay_payment_id,
            status=status,
            amount_paise=payment.get("amount"),
            currency=payment.get("currency"),
        )

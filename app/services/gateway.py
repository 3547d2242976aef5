"""Razorpay API client wrapper with a bounded timeout on every remote call."""

import asyncio
from typing import Any, Callable

import requests

from app.core.config import Settings, get_settings
from app.core.exceptions import BadRequestError, ConfigurationError, SignatureInvalid, VerificationUnavailable
from app.core.logging import get_logger

log = get_logger(__name__)


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str, timeout_seconds: float = 10.0):
        self.key_id = (key_id or "").strip()
        self.key_secret = (key_secret or "").strip()
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RazorpayGateway":
        s = settings or get_settings()
        return cls(s.razorpay_key_id, s.razorpay_key_secret, s.razorpay_timeout_seconds)

    def _client(self):
        import razorpay
        missing = [name for name, v in (("RAZORPAY_KEY_ID", self.key_id), ("RAZORPAY_KEY_SECRET", self.key_secret)) if not v]
        if missing:
            raise ConfigurationError(f"Razorpay credentials are missing: {', '.join(missing)}")
        return razorpay.Client(auth=(self.key_id, self.key_secret))

    async def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        from razorpay.errors import GatewayError, ServerError

        # razorpay's client is sync (requests): the socket timeout frees the thread, wait_for bounds the caller
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            log.warning("razorpay_timeout", op=op, timeout_seconds=self.timeout_seconds)
            raise VerificationUnavailable("Payment gateway timed out") from e
        except (requests.RequestException, ServerError, GatewayError) as e:
            log.warning("razorpay_unavailable", op=op, error=str(e))
            raise VerificationUnavailable("Payment gateway unavailable") from e

    async def create_order(
        self,
        amount_paise: int,
        currency: str = "INR",
        receipt: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> dict:
        client = self._client()
        from razorpay.errors import BadRequestError as RazorpayBadRequestError

        data = {"amount": amount_paise, "currency": currency, "notes": notes or {}}
        if receipt:
            data["receipt"] = receipt
        try:
            return await self._call("order.create", client.order.create, data, timeout=self.timeout_seconds)
        except RazorpayBadRequestError as e:
            if "authentication" in str(e).lower():
                raise ConfigurationError("Razorpay authentication failed; check key id and secret") from e
            raise BadRequestError(f"Razorpay error: {e}") from e

    async def fetch_payment(self, payment_id: str) -> dict:
        client = self._client()
        from razorpay.errors import BadRequestError as RazorpayBadRequestError

        try:
            return await self._call("payment.fetch", client.payment.fetch, payment_id, timeout=self.timeout_seconds)
        except RazorpayBadRequestError as e:
            if "authentication" in str(e).lower():
                raise ConfigurationError("Razorpay authentication failed; check key id and secret") from e
            raise SignatureInvalid("Payment not found at gateway") from e

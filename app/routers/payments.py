import json
import time

from fastapi import APIRouter, Depends, Header, Request, Response

from app.core.logging import bind_payment_context, get_logger
from app.deps import get_catalog, get_gateway, get_verifier
from app.schemas.payments import CreateOrderRequest, VerifyPaymentRequest
from app.services import reconciler
from app.services import webhooks as webhooks_service
from app.services.catalog import Catalog
from app.services.gateway import RazorpayGateway
from app.services.tax import from_paise
from app.services.verification import PaymentVerifier

router = APIRouter()
log = get_logger(__name__)

NO_STORE = "no-store, no-cache, must-revalidate"


@router.post("/create-order")
async def create_order(
    body: CreateOrderRequest,
    response: Response,
    gateway: RazorpayGateway = Depends(get_gateway),
):
    """Create the Razorpay order only; the DB order is created after payment is verified."""
    amount = round(body.amount, 2)
    order_data = body.model_dump(by_alias=True, exclude={"currency"}, exclude_none=True)
    order_data["amount"] = amount
    rp_order = await gateway.create_order(
        amount_paise=int(round(amount * 100)),
        currency=body.currency,
        receipt=f"receipt_{int(time.time() * 1000)}",
        notes={
            "customerName": body.customer_name or "",
            "customerEmail": body.customer_email or "",
            "userId": body.user_id or "",
            "orderData": json.dumps(order_data, separators=(",", ":")),
        },
    )
    log.info("razorpay_order_created", razorpay_order_id=rp_order["id"], amount=amount)
    response.headers["Cache-Control"] = NO_STORE
    return {
        "success": True,
        "razorpayOrderId": rp_order["id"],
        "amount": rp_order["amount"],
        "currency": rp_order["currency"],
        "key": gateway.key_id,
        "orderData": order_data,
    }


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    response: Response,
    verifier: PaymentVerifier = Depends(get_verifier),
    catalog: Catalog = Depends(get_catalog),
):
    """Checkout confirmation: verify signature and capture, then reconcile into the one order."""
    bind_payment_context(razorpay_order_id=body.razorpay_order_id, razorpay_payment_id=body.razorpay_payment_id)
    payment = await verifier.verify(body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature)
    order = await reconciler.reconcile(
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.order_data,
        catalog,
        currency=payment.currency or "INR",
        paid_amount=from_paise(payment.amount_paise),
    )
    response.headers["Cache-Control"] = NO_STORE
    return {
        "success": True,
        "message": "Payment verified",
        "paymentId": body.razorpay_payment_id,
        "orderId": str(order.id),
        "invoiceNumber": order.invoice_number,
    }


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None, alias="X-Razorpay-Signature"),
    x_razorpay_event_id: str | None = Header(default=None, alias="X-Razorpay-Event-Id"),
    catalog: Catalog = Depends(get_catalog),
):
    """Razorpay webhook: 401 on a bad signature, otherwise always acknowledged."""
    body = await request.body()
    await webhooks_service.receive_webhook(body, x_razorpay_signature, x_razorpay_event_id, catalog)
    return {"received": True}

import hashlib
import hmac
import json
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["SELLER_STATE"] = "Karnataka"
os.environ["ADMIN_EMAIL"] = "admin@example.com"
os.environ.setdefault("MONGODB_DB_NAME", "storefront_test")

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
ADMIN_HEADERS = {"X-User-Email": "admin@example.com"}


class FakeGateway:
    """Stands in for RazorpayGateway: payments are whatever the test registers."""

    key_id = "rzp_test_key"

    def __init__(self) -> None:
        self.payments: dict[str, dict[str, Any]] = {}
        self.created_orders: list[dict[str, Any]] = []
        self.fetch_error: Exception | None = None
        self.fetch_calls = 0

    def add_payment(self, payment_id: str, order_id: str, status: str = "captured", amount: int = 31500) -> None:
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "status": status,
            "amount": amount,
            "currency": "INR",
            "method": "upi",
        }

    async def fetch_payment(self, payment_id: str) -> dict:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        from app.core.exceptions import SignatureInvalid
        if payment_id not in self.payments:
            raise SignatureInvalid("Payment not found at gateway")
        return self.payments[payment_id]

    async def create_order(self, amount_paise: int, currency: str = "INR", receipt: str | None = None, notes=None) -> dict:
        order = {
            "id": f"order_test_{len(self.created_orders) + 1}",
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.created_orders.append(order)
        return order


@pytest_asyncio.fixture
async def db():
    from app.db.init import init_db
    client = AsyncMongoMockClient()
    database = client["storefront_test"]
    await init_db(database)
    yield database


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(db, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_gateway
    from app.main import app
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def catalog(db):
    from app.services.catalog import BeanieCatalog
    return BeanieCatalog()


@pytest_asyncio.fixture
async def products(db):
    """Two catalog products at 5% GST; ids as strings."""
    from app.models.product import Product
    ghee = Product(name="A2 Ghee 500ml", gst=0.05, hsn_code="0405")
    honey = Product(name="Raw Honey 250g", gst=0.05, hsn_code="0409")
    await ghee.insert()
    await honey.insert()
    return str(ghee.id), str(honey.id)


@pytest.fixture
def order_data(products) -> dict[str, Any]:
    ghee_id, honey_id = products
    return {
        "amount": 315,
        "items": [
            {"productId": ghee_id, "productName": "A2 Ghee 500ml", "quantity": 1, "price": 100},
            {"productId": honey_id, "productName": "Raw Honey 250g", "quantity": 1, "price": 200},
        ],
        "customerName": "Asha Rao",
        "customerEmail": "asha@example.com",
        "customerPhone": "+919800000000",
        "shippingAddress": {
            "fullName": "Asha Rao",
            "addressLine1": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "zipCode": "560001",
        },
    }


@pytest.fixture
def draft(order_data):
    from app.schemas.payments import OrderDraft
    return OrderDraft.model_validate(order_data)


def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(
    event: str,
    order_id: str,
    payment_id: str,
    order_data: dict[str, Any] | None = None,
    include_order: bool = True,
    amount: int = 31500,
) -> bytes:
    payment = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "status": "failed" if event == "payment.failed" else "captured",
        "notes": [],
    }
    payload: dict[str, Any] = {"payment": {"entity": payment}}
    if include_order:
        notes = {"orderData": json.dumps(order_data)} if order_data else []
        payload["order"] = {"entity": {"id": order_id, "entity": "order", "amount": amount, "amount_paid": amount, "notes": notes}}
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode()

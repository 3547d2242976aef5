from datetime import datetime
from enum import Enum

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ShippingAddress(BaseModel):
    """Snapshot of the address at checkout; admin tracking fields ride along."""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "India"
    shipped_date: datetime | None = None
    tracking_number: str | None = None
    notes: str | None = None


class OrderLineItem(BaseModel):
    product_id: str
    product_name: str
    hsn_code: str | None = None
    quantity: int
    price: float  # unit price, exclusive of GST
    gst_rate: float
    gst_amount: float
    line_total: float


class Order(Document):
    """One order per Razorpay transaction. Line items are embedded so header and lines commit in one write."""
    razorpay_order_id: str
    razorpay_payment_id: str | None = None
    short_id: str = ""  # last 8 of the id, upper-case; customers quote it
    invoice_number: str | None = None
    user_id: str | None = None

    amount: float
    amount_paid: float | None = None  # as captured at the gateway
    subtotal: float | None = None
    gst_amount: float | None = None
    cgst_amount: float | None = None
    sgst_amount: float | None = None
    igst_amount: float | None = None
    currency: str = "INR"

    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PENDING

    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    shipping_address: ShippingAddress | None = None

    items: list[OrderLineItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_tax_breakdown(self) -> bool:
        return self.subtotal is not None and self.gst_amount is not None

    class Settings:
        name = "orders"
        indexes = [
            IndexModel([("razorpay_order_id", ASCENDING)], unique=True, name="uniq_razorpay_order_id"),
            # Partial: orders without a payment id yet must not collide on null
            IndexModel(
                [("razorpay_payment_id", ASCENDING)],
                unique=True,
                name="uniq_razorpay_payment_id",
                partialFilterExpression={"razorpay_payment_id": {"$type": "string"}},
            ),
            IndexModel([("short_id", ASCENDING)]),
            IndexModel([("order_status", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
        ]

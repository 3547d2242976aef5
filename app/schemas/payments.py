"""Request bodies for /payment/*. Checkout client sends camelCase."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShippingAddressIn(CamelModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "India"


class DraftItem(CamelModel):
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(gt=0)

    @field_validator("price")
    @classmethod
    def _round_price(cls, v: float) -> float:
        return round(v, 2)


class OrderDraft(CamelModel):
    """What the client (or the gateway order notes) says was bought."""
    amount: float = Field(gt=0)
    items: list[DraftItem] = Field(min_length=1)
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    user_id: str | None = None
    shipping_address: ShippingAddressIn | None = None

    @property
    def shipping_state(self) -> str | None:
        return self.shipping_address.state if self.shipping_address else None


class CreateOrderRequest(OrderDraft):
    currency: str = "INR"


class VerifyPaymentRequest(CamelModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    order_data: OrderDraft
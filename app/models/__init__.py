from app.models.order import Order, OrderLineItem, OrderStatus, PaymentStatus, ShippingAddress
from app.models.product import Product
from app.models.failed_webhook import FailedWebhook

__all__ = [
    "Order",
    "OrderLineItem",
    "OrderStatus",
    "PaymentStatus",
    "ShippingAddress",
    "Product",
    "FailedWebhook",
]

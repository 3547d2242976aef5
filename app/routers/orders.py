from fastapi import APIRouter, Query

from app.core.exceptions import BadRequestError, NotFoundError
from app.models.order import OrderStatus
from app.services import orders as orders_service
from app.services.order_status import Actor

router = APIRouter()


@router.get("")
async def list_orders(user_id: str | None = Query(None, alias="userId")):
    """Customer order history, newest first."""
    if not user_id or not user_id.strip():
        raise BadRequestError("User ID is required")
    orders = await orders_service.list_for_user(user_id.strip())
    return {"orders": [orders_service.order_to_dict(o) for o in orders]}


@router.get("/track")
async def track_order(order_id: str = Query(..., alias="orderId", min_length=1)):
    """Find an order by full id, 8-char short id, or Razorpay order id."""
    order = await orders_service.find_for_tracking(order_id)
    if not order:
        raise NotFoundError("Order not found. Check the order ID in your confirmation email or order history.")
    return {"order": orders_service.order_to_dict(order)}


@router.get("/{order_id}")
async def get_order(order_id: str):
    order = await orders_service.find_for_tracking(order_id)
    if not order:
        raise NotFoundError("Order not found")
    return {"order": orders_service.order_to_dict(order)}


@router.post("/{order_id}/confirm-delivery")
async def confirm_delivery(order_id: str):
    """Customer confirms a SHIPPED order arrived."""
    order = await orders_service.get_order(order_id)
    order = await orders_service.transition_order_status(order, OrderStatus.DELIVERED, Actor.CUSTOMER)
    return {"message": "Order delivery confirmed", "order": orders_service.order_to_dict(order)}

"""Order persistence: lookup by gateway ids, single-write create, conditional status updates."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import Set
from beanie.odm.queries.update import UpdateResponse
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import DuplicateOrderError, InvalidTransition, NotFoundError
from app.core.logging import get_logger
from app.models.order import Order, OrderStatus, PaymentStatus, ShippingAddress
from app.services.order_status import Actor, ensure_order_transition

log = get_logger(__name__)


def _object_id(order_id: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(order_id)
    except (InvalidId, TypeError):
        return None


async def find_by_gateway_ids(razorpay_order_id: str | None, razorpay_payment_id: str | None) -> Order | None:
    """Either id alone is enough: each entry path may only know one of them."""
    clauses: list[dict[str, Any]] = []
    if razorpay_order_id:
        clauses.append({"razorpay_order_id": razorpay_order_id})
    if razorpay_payment_id:
        clauses.append({"razorpay_payment_id": razorpay_payment_id})
    if not clauses:
        return None
    return await Order.find_one({"$or": clauses})


async def get_order(order_id: str) -> Order:
    oid = _object_id(order_id)
    order = await Order.get(oid) if oid else None
    if not order:
        raise NotFoundError("Order not found")
    return order


async def find_for_tracking(value: str) -> Order | None:
    """Full id, 8-char short id (last 8 of the id), or Razorpay order id."""
    value = (value or "").strip()
    if not value:
        return None
    oid = _object_id(value)
    if oid:
        order = await Order.get(oid)
        if order:
            return order
    if len(value) == 8:
        order = await Order.find_one(Order.short_id == value.upper())
        if order:
            return order
    return await Order.find_one(Order.razorpay_order_id == value)


async def insert_order(order: Order) -> Order:
    """Header and embedded line items go in one document insert."""
    # id is fixed before the write so the short id lands in the same document
    if order.id is None:
        order.id = PydanticObjectId()
    order.short_id = str(order.id)[-8:].upper()
    try:
        await order.insert()
    except DuplicateKeyError as e:
        raise DuplicateOrderError(str(e)) from e
    log.info(
        "order_created",
        order_id=str(order.id),
        razorpay_order_id=order.razorpay_order_id,
        invoice_number=order.invoice_number,
        amount=order.amount,
        items=len(order.items),
    )
    return order


async def apply_if_payment_status(order: Order, expected: PaymentStatus, fields: dict[str, Any]) -> Order | None:
    """Compare-and-set on payment_status. None when another writer got there first."""
    fields = {**fields, "updated_at": datetime.utcnow()}
    try:
        return await Order.find_one(
            {"_id": order.id, "payment_status": expected.value},
        ).update(Set(fields), response_type=UpdateResponse.NEW_DOCUMENT)
    except DuplicateKeyError as e:
        raise DuplicateOrderError(str(e)) from e


async def transition_order_status(
    order: Order,
    target: OrderStatus,
    actor: Actor,
    extra: dict[str, Any] | None = None,
) -> Order:
    """Validate, then write only if the status is still what we validated against."""
    ensure_order_transition(order.order_status, target, actor)
    fields = {"order_status": target.value, "updated_at": datetime.utcnow(), **(extra or {})}
    updated = await Order.find_one(
        {"_id": order.id, "order_status": order.order_status.value},
    ).update(Set(fields), response_type=UpdateResponse.NEW_DOCUMENT)
    if updated is None:
        current = await get_order(str(order.id))
        raise InvalidTransition(current.order_status.value, target.value, axis="order_status")
    log.info(
        "order_status_changed",
        order_id=str(order.id),
        from_status=order.order_status.value,
        to_status=target.value,
        actor=actor.value,
    )
    return updated


def shipping_detail_fields(order: Order, details: dict[str, Any]) -> dict[str, Any]:
    """$set fields for tracking details; a missing address is created whole."""
    if order.shipping_address is None:
        return {"shipping_address": ShippingAddress(**details).model_dump()}
    return {f"shipping_address.{k}": v for k, v in details.items()}


async def update_shipping_details(order: Order, details: dict[str, Any]) -> Order:
    sets = {**shipping_detail_fields(order, details), "updated_at": datetime.utcnow()}
    updated = await Order.find_one({"_id": order.id}).update(Set(sets), response_type=UpdateResponse.NEW_DOCUMENT)
    if updated is None:
        raise NotFoundError("Order not found")
    return updated


async def list_orders(
    order_status: OrderStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    query = {"order_status": order_status.value} if order_status else {}
    total = await Order.find(query).count()
    items = await Order.find(query).sort(-Order.created_at).skip(offset).limit(limit).to_list()
    return items, total


async def list_for_user(user_id: str) -> list[Order]:
    """Customer order history, newest first, line items included."""
    return await Order.find(Order.user_id == user_id).sort(-Order.created_at).to_list()


async def order_stats() -> dict[str, Any]:
    counts = {s.value: 0 for s in OrderStatus}
    revenue = 0.0
    completed = 0
    async for order in Order.find_all():
        counts[order.order_status.value] += 1
        if order.payment_status == PaymentStatus.COMPLETED and order.order_status != OrderStatus.CANCELLED:
            completed += 1
            revenue += order.amount
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "paid_orders": completed,
        "revenue": round(revenue, 2),
    }


def order_to_dict(order: Order) -> dict[str, Any]:
    data = order.model_dump(mode="json", exclude={"id", "revision_id"})
    data["id"] = str(order.id)
    return data

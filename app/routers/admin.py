from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.core.pagination import Page, paginate
from app.deps import get_catalog, require_admin
from app.models.failed_webhook import FailedWebhook
from app.models.order import OrderStatus
from app.services import orders as orders_service
from app.services import webhooks as webhooks_service
from app.services.catalog import Catalog
from app.services.order_status import Actor

router = APIRouter()


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class UpdateTrackingRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_status: OrderStatus | None = None
    shipped_date: datetime | None = None
    tracking_number: str | None = None
    notes: str | None = None


def _failed_to_dict(record: FailedWebhook) -> dict:
    return {
        "id": str(record.id),
        "event": record.event,
        "event_id": record.event_id,
        "reason": record.reason,
        "transient": record.transient,
        "retries": record.retries,
        "resolved_at": record.resolved_at.isoformat() if record.resolved_at else None,
        "created_at": record.created_at.isoformat(),
    }


@router.get("/orders")
async def admin_list_orders(
    admin: str = Depends(require_admin),
    status: OrderStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: orders newest first, optionally filtered by order status."""
    limit, offset = paginate(limit, offset)
    items, total = await orders_service.list_orders(status, limit=limit, offset=offset)
    return Page[dict](
        items=[orders_service.order_to_dict(o) for o in items],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.get("/orders/stats")
async def admin_order_stats(admin: str = Depends(require_admin)):
    return await orders_service.order_stats()


@router.patch("/orders/{order_id}/status")
async def admin_update_status(order_id: str, body: UpdateStatusRequest, admin: str = Depends(require_admin)):
    """Admin: move an order along PROCESSING -> SHIPPED -> DELIVERED, or cancel before shipping."""
    order = await orders_service.get_order(order_id)
    order = await orders_service.transition_order_status(order, body.status, Actor.ADMIN)
    return {"message": "Order status updated", "order": orders_service.order_to_dict(order)}


@router.put("/orders/{order_id}/tracking")
async def admin_update_tracking(order_id: str, body: UpdateTrackingRequest, admin: str = Depends(require_admin)):
    """Admin: tracking number, shipped date and notes; optional status change goes through the state machine."""
    order = await orders_service.get_order(order_id)
    details = body.model_dump(include={"shipped_date", "tracking_number", "notes"}, exclude_none=True)
    if body.order_status is not None and body.order_status != order.order_status:
        # Details and status land in one conditional write or not at all
        extra = orders_service.shipping_detail_fields(order, details) if details else None
        order = await orders_service.transition_order_status(order, body.order_status, Actor.ADMIN, extra=extra)
    elif details:
        order = await orders_service.update_shipping_details(order, details)
    return {"order": orders_service.order_to_dict(order)}


@router.get("/webhooks/failed")
async def admin_failed_webhooks(
    admin: str = Depends(require_admin),
    include_resolved: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: dead-lettered webhook deliveries awaiting replay."""
    query = {} if include_resolved else {"resolved_at": None}
    records = await FailedWebhook.find(query).sort("-created_at").skip(offset).limit(limit).to_list()
    return {"items": [_failed_to_dict(r) for r in records], "limit": limit, "offset": offset}


@router.post("/webhooks/failed/{failed_id}/replay")
async def admin_replay_webhook(
    failed_id: str,
    admin: str = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog),
):
    record = await webhooks_service.replay_by_id(failed_id, catalog)
    return _failed_to_dict(record)

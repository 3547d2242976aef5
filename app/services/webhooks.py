"""Razorpay webhook intake: verify, classify, reconcile, dead-letter what fails.

Once the signature checks out the sender always gets a 2xx. Razorpay retries
on anything else, and a bug on our side should not turn into a retry storm;
failures land in failed_webhooks for replay instead.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.exceptions import AmountMismatch, InvalidTransition, MalformedPayload, NotFoundError, SignatureInvalid
from app.core.logging import bind_payment_context, get_logger
from app.core.security import verify_razorpay_webhook
from app.models.failed_webhook import FailedWebhook
from app.models.order import Order
from app.schemas.payments import OrderDraft
from app.services import reconciler
from app.services.catalog import Catalog
from app.services.tax import from_paise

log = get_logger(__name__)

# Errors that replaying the same payload cannot fix
PERMANENT_ERRORS = (MalformedPayload, InvalidTransition, SignatureInvalid, AmountMismatch)


@dataclass
class WebhookEvent:
    event: str
    event_id: str | None = None
    payment: dict[str, Any] = field(default_factory=dict)
    order: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def razorpay_order_id(self) -> str | None:
        return self.order.get("id") or self.payment.get("order_id") or None

    @property
    def razorpay_payment_id(self) -> str | None:
        return self.payment.get("id") or None

    @property
    def paid_amount(self) -> Decimal | None:
        """Captured amount in rupees: the payment entity, else the order's amount_paid."""
        paid = from_paise(self.payment.get("amount"))
        return paid if paid is not None else from_paise(self.order.get("amount_paid"))


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    wrapper = payload.get(name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}


def parse_event(data: Any, event_id: str | None = None) -> WebhookEvent:
    if not isinstance(data, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    event = data.get("event")
    if not isinstance(event, str) or not event:
        raise MalformedPayload("Webhook event type missing")
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
    return WebhookEvent(
        event=event,
        event_id=event_id,
        payment=_entity(payload, "payment"),
        order=_entity(payload, "order"),
        raw=data,
    )


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    # Razorpay sends [] rather than {} when an entity has no notes
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def extract_order_draft(event: WebhookEvent) -> OrderDraft | None:
    """Best-effort parse of notes.orderData written at checkout.

    Order notes win over payment notes. When the draft carries no amount the
    captured amount (paise) is used. Anything unparseable yields None.
    """
    raw = _notes(event.order).get("orderData") or _notes(event.payment).get("orderData")
    if not raw:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except (TypeError, ValueError):
        log.warning("webhook_order_data_unparseable", event_id=event.event_id)
        return None
    if not isinstance(data, dict):
        return None
    if not data.get("amount"):
        paise = event.payment.get("amount") or event.order.get("amount_paid") or event.order.get("amount")
        if isinstance(paise, (int, float)) and paise > 0:
            data["amount"] = paise / 100
    try:
        return OrderDraft.model_validate(data)
    except ValidationError as e:
        log.warning("webhook_order_data_invalid", event_id=event.event_id, errors=len(e.errors()))
        return None


def _currency(event: WebhookEvent) -> str:
    return event.payment.get("currency") or event.order.get("currency") or "INR"


async def handle_payment_success(event: WebhookEvent, catalog: Catalog) -> Order | None:
    if not event.razorpay_order_id and not event.razorpay_payment_id:
        raise MalformedPayload(f"{event.event} without payment or order entity")
    return await reconciler.reconcile(
        event.razorpay_order_id,
        event.razorpay_payment_id,
        extract_order_draft(event),
        catalog,
        currency=_currency(event),
        paid_amount=event.paid_amount,
    )


async def handle_payment_failure(event: WebhookEvent, catalog: Catalog) -> Order | None:
    if not event.payment:
        raise MalformedPayload("payment.failed without payment entity")
    return await reconciler.mark_failed(event.razorpay_order_id, event.razorpay_payment_id)


Handler = Callable[[WebhookEvent, Catalog], Awaitable[Order | None]]

HANDLERS: dict[str, Handler] = {
    "payment.captured": handle_payment_success,
    "order.paid": handle_payment_success,
    "payment.failed": handle_payment_failure,
}


async def dispatch(event: WebhookEvent, catalog: Catalog) -> Order | None:
    handler = HANDLERS.get(event.event)
    if handler is None:
        log.info("webhook_unhandled_event", webhook_event=event.event, event_id=event.event_id)
        return None
    bind_payment_context(razorpay_order_id=event.razorpay_order_id, razorpay_payment_id=event.razorpay_payment_id)
    return await handler(event, catalog)


async def dead_letter(
    reason: str,
    *,
    transient: bool,
    event: str = "",
    event_id: str | None = None,
    payload: dict[str, Any] | None = None,
    raw_body: str | None = None,
) -> FailedWebhook | None:
    """Park an unprocessable delivery. Must not raise: the ack goes out regardless."""
    try:
        record = FailedWebhook(
            event=event,
            event_id=event_id,
            payload=payload or {},
            raw_body=raw_body,
            reason=reason[:2000],
            transient=transient,
        )
        await record.insert()
    except Exception:
        log.exception("webhook_dead_letter_write_failed", webhook_event=event, event_id=event_id, reason=reason)
        return None
    log.error(
        "webhook_dead_lettered",
        failed_webhook_id=str(record.id),
        webhook_event=event,
        event_id=event_id,
        reason=reason,
        transient=transient,
    )
    return record


async def receive_webhook(body: bytes, signature: str | None, event_id: str | None, catalog: Catalog) -> None:
    """Raises only for authentication problems; everything after that is acknowledged."""
    verify_razorpay_webhook(body, signature, get_settings().webhook_secret)
    try:
        data = json.loads(body.decode("utf-8"))
        event = parse_event(data, event_id)
    except (UnicodeDecodeError, ValueError, MalformedPayload) as e:
        await dead_letter(
            str(e) or "Malformed payload",
            transient=False,
            event_id=event_id,
            raw_body=body.decode("utf-8", errors="replace"),
        )
        return
    log.info("webhook_received", webhook_event=event.event, event_id=event_id)
    try:
        await dispatch(event, catalog)
    except Exception as e:
        transient = not isinstance(e, PERMANENT_ERRORS)
        if transient:
            log.exception("webhook_processing_failed", webhook_event=event.event, event_id=event_id)
        await dead_letter(
            str(e) or type(e).__name__,
            transient=transient,
            event=event.event,
            event_id=event_id,
            payload=event.raw,
        )


async def replay(record: FailedWebhook, catalog: Catalog) -> FailedWebhook:
    """Re-dispatch a parked delivery; marks it resolved on success, counts the retry either way."""
    if record.resolved_at is not None:
        return record
    record.retries += 1
    try:
        event = parse_event(record.payload, record.event_id)
        await dispatch(event, catalog)
    except Exception as e:
        record.reason = (str(e) or type(e).__name__)[:2000]
        record.transient = not isinstance(e, PERMANENT_ERRORS)
        await record.save()
        log.warning("webhook_replay_failed", failed_webhook_id=str(record.id), retries=record.retries, reason=record.reason)
        return record
    record.resolved_at = datetime.utcnow()
    await record.save()
    log.info("webhook_replayed", failed_webhook_id=str(record.id), retries=record.retries)
    return record


async def replay_by_id(failed_id: str, catalog: Catalog) -> FailedWebhook:
    try:
        record = await FailedWebhook.get(PydanticObjectId(failed_id))
    except (InvalidId, TypeError):
        record = None
    if record is None:
        raise NotFoundError("Failed webhook not found")
    return await replay(record, catalog)


async def replay_transient_failures(catalog: Catalog, max_retries: int | None = None, limit: int = 100) -> dict[str, int]:
    """Cron: retry unresolved transient failures below the retry cap."""
    cap = max_retries if max_retries is not None else get_settings().webhook_replay_max_retries
    records = (
        await FailedWebhook.find(
            {"resolved_at": None, "transient": True, "retries": {"$lt": cap}},
        )
        .sort("+created_at")
        .limit(limit)
        .to_list()
    )
    out = {"attempted": 0, "resolved": 0, "failed": 0}
    for record in records:
        out["attempted"] += 1
        result = await replay(record, catalog)
        if result.resolved_at is not None:
            out["resolved"] += 1
        else:
            out["failed"] += 1
    return out

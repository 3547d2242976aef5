"""Idempotent find-or-create of the one Order per Razorpay transaction.

Both the checkout confirmation (/payment/verify) and the webhook end here, in
any order and any number of times. Guarantees, in order of strength:

* within a process, calls for the same gateway order id run one at a time
  (keyed asyncio lock around the read-modify-write);
* across processes, unique indexes on razorpay_order_id / razorpay_payment_id
  reject the second insert, and the loser re-reads and takes the update path.

Existing values are never overwritten: invoice number and tax fields are only
backfilled when unset.
"""

import asyncio
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from app.core.config import get_settings
from app.core.exceptions import AmountMismatch, DuplicateOrderError, InvalidTransition, MalformedPayload
from app.core.logging import get_logger
from app.models.order import Order, OrderLineItem, OrderStatus, PaymentStatus, ShippingAddress
from app.schemas.payments import OrderDraft
from app.services import orders as orders_service
from app.services.catalog import Catalog
from app.services.order_status import Actor, ensure_order_transition, ensure_payment_transition
from app.services.tax import LineInput, OrderTax, compute_order_tax, resolve_gst_rate, rounding_tolerance, to_decimal

log = get_logger(__name__)

MAX_CONFLICT_RETRIES = 3


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_locks = KeyedLock()


def generate_invoice_number(now: datetime | None = None) -> str:
    """INV-YYYYMMDD-NNNNN"""
    now = now or datetime.utcnow()
    return f"INV-{now:%Y%m%d}-{secrets.randbelow(100000):05d}"


def _money(value: Decimal) -> float:
    return float(value)


def _tax_fields(tax: OrderTax) -> dict[str, Any]:
    return {
        "subtotal": _money(tax.subtotal),
        "gst_amount": _money(tax.gst_amount),
        "cgst_amount": _money(tax.breakdown.cgst),
        "sgst_amount": _money(tax.breakdown.sgst),
        "igst_amount": _money(tax.breakdown.igst),
    }


async def price_draft(draft: OrderDraft, catalog: Catalog) -> tuple[list[OrderLineItem], OrderTax]:
    """Resolve GST rate and HSN per product at order time, then tax every line."""
    settings = get_settings()
    products = await catalog.get_products_by_ids([item.product_id for item in draft.items])
    by_id = {str(p.id): p for p in products}
    rates = []
    for item in draft.items:
        product = by_id.get(item.product_id)
        rates.append(resolve_gst_rate(product.gst if product else None, settings.default_gst_rate))
    tax = compute_order_tax(
        [LineInput(price=to_decimal(item.price), quantity=item.quantity, gst_rate=rate) for item, rate in zip(draft.items, rates)],
        shipping_state=draft.shipping_state,
        seller_state=settings.seller_state,
    )
    items = []
    for item, line in zip(draft.items, tax.lines):
        product = by_id.get(item.product_id)
        items.append(
            OrderLineItem(
                product_id=item.product_id,
                product_name=item.product_name,
                hsn_code=product.hsn_code if product else None,
                quantity=item.quantity,
                price=_money(line.price),
                gst_rate=_money(line.gst_rate),
                gst_amount=_money(line.gst_amount),
                line_total=_money(line.line_total),
            )
        )
    if abs(to_decimal(draft.amount) - tax.amount) > tax.tolerance:
        log.warning(
            "order_amount_mismatch",
            claimed_amount=draft.amount,
            computed_amount=_money(tax.amount),
            items=len(items),
        )
    return items, tax


def check_paid_amount(paid: Decimal | None, expected: Decimal, tolerance: Decimal, razorpay_order_id: str | None) -> None:
    """The gateway's captured amount must cover the order total; None means the gateway did not say."""
    if paid is None:
        return
    if abs(paid - expected) > tolerance:
        log.warning(
            "order_paid_amount_mismatch",
            razorpay_order_id=razorpay_order_id,
            paid_amount=_money(paid),
            order_amount=_money(expected),
        )
        raise AmountMismatch(paid, expected)


def _retax_existing(order: Order) -> OrderTax:
    settings = get_settings()
    state = order.shipping_address.state if order.shipping_address else None
    return compute_order_tax(
        [LineInput(price=to_decimal(i.price), quantity=i.quantity, gst_rate=to_decimal(i.gst_rate)) for i in order.items],
        shipping_state=state,
        seller_state=settings.seller_state,
    )


async def _build_order(
    razorpay_order_id: str,
    razorpay_payment_id: str | None,
    draft: OrderDraft,
    catalog: Catalog,
    currency: str,
    paid_amount: Decimal | None = None,
) -> Order:
    items, tax = await price_draft(draft, catalog)
    check_paid_amount(paid_amount, tax.amount, tax.tolerance, razorpay_order_id)
    shipping = ShippingAddress(**draft.shipping_address.model_dump()) if draft.shipping_address else None
    return Order(
        razorpay_order_id=razorpay_order_id,
        razorpay_payment_id=razorpay_payment_id,
        invoice_number=generate_invoice_number(),
        user_id=draft.user_id or None,
        amount=_money(tax.amount),
        amount_paid=_money(paid_amount) if paid_amount is not None else None,
        currency=currency or "INR",
        payment_status=PaymentStatus.COMPLETED,
        order_status=OrderStatus.PROCESSING,
        customer_name=draft.customer_name or None,
        customer_email=draft.customer_email or None,
        customer_phone=draft.customer_phone or None,
        shipping_address=shipping,
        items=items,
        **_tax_fields(tax),
    )


async def _complete_existing(
    order: Order,
    razorpay_payment_id: str | None,
    draft: OrderDraft | None,
    catalog: Catalog,
    paid_amount: Decimal | None = None,
) -> Order:
    """Found but not yet paid: mark paid, advance to PROCESSING, backfill only what is missing."""
    if order.payment_status == PaymentStatus.COMPLETED:
        return order
    ensure_payment_transition(order.payment_status, PaymentStatus.COMPLETED)

    fields: dict[str, Any] = {"payment_status": PaymentStatus.COMPLETED.value}
    if razorpay_payment_id and not order.razorpay_payment_id:
        fields["razorpay_payment_id"] = razorpay_payment_id
    if order.order_status == OrderStatus.PENDING:
        ensure_order_transition(order.order_status, OrderStatus.PROCESSING, Actor.SYSTEM)
        fields["order_status"] = OrderStatus.PROCESSING.value
    if not order.invoice_number:
        fields["invoice_number"] = generate_invoice_number()

    tax: OrderTax | None = None
    if order.items:
        tax = _retax_existing(order)
        check_paid_amount(
            paid_amount, to_decimal(order.amount), rounding_tolerance(len(order.items)), order.razorpay_order_id
        )
    elif draft is not None:
        items, tax = await price_draft(draft, catalog)
        fields["items"] = [i.model_dump() for i in items]
        fields["amount"] = _money(tax.amount)
        check_paid_amount(paid_amount, tax.amount, tax.tolerance, order.razorpay_order_id)
    if tax is not None:
        for name, value in _tax_fields(tax).items():
            if getattr(order, name) is None:
                fields[name] = value
    if paid_amount is not None and order.amount_paid is None:
        fields["amount_paid"] = _money(paid_amount)

    updated = await orders_service.apply_if_payment_status(order, order.payment_status, fields)
    if updated is None:
        # Lost the race to another writer; whatever it committed stands
        current = await orders_service.get_order(str(order.id))
        log.info("reconcile_concurrent_update", order_id=str(order.id), payment_status=current.payment_status.value)
        if current.payment_status == PaymentStatus.FAILED:
            raise InvalidTransition(current.payment_status.value, PaymentStatus.COMPLETED.value, axis="payment_status")
        return current
    log.info(
        "order_payment_completed",
        order_id=str(updated.id),
        razorpay_payment_id=updated.razorpay_payment_id,
        backfilled=sorted(k for k in fields if k not in ("payment_status", "order_status")),
    )
    return updated


async def reconcile(
    razorpay_order_id: str,
    razorpay_payment_id: str | None,
    draft: OrderDraft | None,
    catalog: Catalog,
    currency: str = "INR",
    paid_amount: Decimal | None = None,
) -> Order:
    """Return the one Order for this transaction, creating or completing it as needed.

    paid_amount is what the gateway reports as captured; when given it must
    match the order total or AmountMismatch is raised and nothing is written.
    """
    if not razorpay_order_id and not razorpay_payment_id:
        raise MalformedPayload("Gateway order id or payment id is required")
    key = razorpay_order_id or razorpay_payment_id
    async with _locks.hold(key):
        for _ in range(MAX_CONFLICT_RETRIES):
            existing = await orders_service.find_by_gateway_ids(razorpay_order_id, razorpay_payment_id)
            if existing is not None:
                if existing.payment_status == PaymentStatus.COMPLETED:
                    log.info("reconcile_already_completed", order_id=str(existing.id))
                    return existing
                return await _complete_existing(existing, razorpay_payment_id, draft, catalog, paid_amount)
            if draft is None:
                raise MalformedPayload("Order data is required to create the order")
            if not razorpay_order_id:
                raise MalformedPayload("Gateway order id is required to create the order")
            order = await _build_order(razorpay_order_id, razorpay_payment_id, draft, catalog, currency, paid_amount)
            try:
                return await orders_service.insert_order(order)
            except DuplicateOrderError:
                # Another process inserted first; loop back and take its row
                log.info("reconcile_insert_conflict", razorpay_order_id=razorpay_order_id)
                continue
        raise DuplicateOrderError(f"Could not reconcile order {razorpay_order_id} after repeated conflicts")


async def mark_failed(razorpay_order_id: str | None, razorpay_payment_id: str | None) -> Order | None:
    """payment.failed: only a still-pending order moves to FAILED. Never creates an order."""
    key = razorpay_order_id or razorpay_payment_id
    if not key:
        raise MalformedPayload("Gateway order id or payment id is required")
    async with _locks.hold(key):
        existing = await orders_service.find_by_gateway_ids(razorpay_order_id, razorpay_payment_id)
        if existing is None:
            log.info("payment_failed_no_order", razorpay_order_id=razorpay_order_id, razorpay_payment_id=razorpay_payment_id)
            return None
        if existing.payment_status != PaymentStatus.PENDING:
            # A later successful attempt or an earlier failure already settled it
            log.info("payment_failed_ignored", order_id=str(existing.id), payment_status=existing.payment_status.value)
            return existing
        ensure_payment_transition(existing.payment_status, PaymentStatus.FAILED)
        updated = await orders_service.apply_if_payment_status(
            existing, PaymentStatus.PENDING, {"payment_status": PaymentStatus.FAILED.value}
        )
        if updated is None:
            return await orders_service.get_order(str(existing.id))
        log.info("order_payment_failed", order_id=str(updated.id))
        return updated

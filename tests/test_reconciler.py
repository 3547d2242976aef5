import asyncio
from decimal import Decimal

import pytest

from app.core.exceptions import AmountMismatch, InvalidTransition, MalformedPayload
from app.models.order import Order, OrderLineItem, OrderStatus, PaymentStatus, ShippingAddress
from app.services import orders as orders_service
from app.services import reconciler
from app.services.tax import rounding_tolerance

pytestmark = pytest.mark.asyncio


async def _pending_order(**overrides) -> Order:
    data = dict(
        razorpay_order_id="order_pending",
        amount=210.0,
        shipping_address=ShippingAddress(state="Kerala"),
        items=[
            OrderLineItem(
                product_id="p1",
                product_name="Cold-pressed Oil",
                quantity=1,
                price=200.0,
                gst_rate=0.05,
                gst_amount=10.0,
                line_total=210.0,
            )
        ],
    )
    data.update(overrides)
    order = Order(**data)
    await order.insert()
    return order


async def test_creates_order_with_tax_and_invoice(catalog, draft, products):
    order = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.order_status == OrderStatus.PROCESSING
    assert order.subtotal == 300.0
    assert order.gst_amount == 15.0
    assert order.cgst_amount == 7.5
    assert order.sgst_amount == 7.5
    assert order.igst_amount == 0.0
    assert order.amount == 315.0
    assert order.invoice_number.startswith("INV-")
    assert [i.hsn_code for i in order.items] == ["0405", "0409"]
    assert [i.gst_amount for i in order.items] == [5.0, 10.0]
    assert order.shipping_address.city == "Bengaluru"
    assert await Order.find_all().count() == 1


async def test_reconcile_twice_is_idempotent(catalog, draft):
    first = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    second = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    assert second.id == first.id
    assert second.invoice_number == first.invoice_number
    assert len(second.items) == 2
    assert await Order.find_all().count() == 1


async def test_either_identifier_finds_the_order(catalog, draft):
    first = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    by_payment = await reconciler.reconcile(None, "pay_1", None, catalog)
    by_order = await reconciler.reconcile("order_1", None, None, catalog)
    assert by_payment.id == first.id == by_order.id


async def test_concurrent_calls_create_one_order(catalog, draft):
    results = await asyncio.gather(*[reconciler.reconcile("order_1", "pay_1", draft, catalog) for _ in range(8)])
    assert len({r.id for r in results}) == 1
    assert await Order.find_all().count() == 1
    assert len(reconciler._locks) == 0


async def test_different_transactions_get_separate_orders(catalog, draft):
    a, b = await asyncio.gather(
        reconciler.reconcile("order_a", "pay_a", draft, catalog),
        reconciler.reconcile("order_b", "pay_b", draft, catalog),
    )
    assert a.id != b.id
    assert await Order.find_all().count() == 2


async def test_cross_state_shipping_uses_igst(catalog, order_data):
    from app.schemas.payments import OrderDraft
    order_data["shippingAddress"]["state"] = "Maharashtra"
    order = await reconciler.reconcile("order_1", "pay_1", OrderDraft.model_validate(order_data), catalog)
    assert order.igst_amount == 15.0
    assert order.cgst_amount == order.sgst_amount == 0.0


async def test_unknown_product_falls_back_to_default_rate(catalog, order_data):
    from app.schemas.payments import OrderDraft
    order_data["items"] = [{"productId": "not-a-product", "productName": "Gift Box", "quantity": 2, "price": 49.99}]
    order = await reconciler.reconcile("order_1", "pay_1", OrderDraft.model_validate(order_data), catalog)
    item = order.items[0]
    assert item.gst_rate == 0.05
    assert item.hsn_code is None
    assert item.gst_amount == 5.0  # 99.98 * 0.05 = 4.999
    assert abs(order.subtotal + order.gst_amount - order.amount) <= float(rounding_tolerance(1))


async def test_create_without_draft_is_malformed(catalog):
    with pytest.raises(MalformedPayload):
        await reconciler.reconcile("order_1", "pay_1", None, catalog)
    assert await Order.find_all().count() == 0


async def test_completes_pending_order_and_backfills_missing_fields(catalog):
    pending = await _pending_order()
    order = await reconciler.reconcile("order_pending", "pay_9", None, catalog)
    assert order.id == pending.id
    assert order.razorpay_payment_id == "pay_9"
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.order_status == OrderStatus.PROCESSING
    assert order.invoice_number.startswith("INV-")
    assert order.subtotal == 200.0
    assert order.igst_amount == 10.0
    assert order.cgst_amount == 0.0


async def test_backfill_never_overwrites_committed_values(catalog):
    await _pending_order(invoice_number="INV-20260101-00042", subtotal=199.0, gst_amount=11.0)
    order = await reconciler.reconcile("order_pending", "pay_9", None, catalog)
    assert order.invoice_number == "INV-20260101-00042"
    assert order.subtotal == 199.0
    assert order.gst_amount == 11.0
    assert order.igst_amount == 10.0  # was unset, so filled


async def test_pending_order_without_items_takes_draft_items(catalog, draft):
    await _pending_order(items=[], amount=315.0)
    order = await reconciler.reconcile("order_pending", "pay_9", draft, catalog)
    assert len(order.items) == 2
    assert order.amount == 315.0
    assert order.cgst_amount == 7.5


async def test_failed_payment_is_terminal(catalog, draft):
    pending = await _pending_order(payment_status=PaymentStatus.FAILED)
    with pytest.raises(InvalidTransition):
        await reconciler.reconcile("order_pending", "pay_9", draft, catalog)
    unchanged = await orders_service.get_order(str(pending.id))
    assert unchanged.payment_status == PaymentStatus.FAILED
    assert unchanged.razorpay_payment_id is None
    assert unchanged.invoice_number is None


async def test_insert_conflict_falls_back_to_existing_row(catalog, draft, monkeypatch):
    # Simulate another process inserting between our lookup and our insert
    winner = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    real_find = orders_service.find_by_gateway_ids
    calls = {"n": 0}

    async def stale_then_real(order_id, payment_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_find(order_id, payment_id)

    monkeypatch.setattr(orders_service, "find_by_gateway_ids", stale_then_real)
    order = await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    assert order.id == winner.id
    assert calls["n"] == 2
    assert await Order.find_all().count() == 1


async def test_mark_failed_on_pending_order(catalog):
    pending = await _pending_order()
    order = await reconciler.mark_failed("order_pending", "pay_x")
    assert order.id == pending.id
    assert order.payment_status == PaymentStatus.FAILED
    assert order.order_status == OrderStatus.PENDING


async def test_mark_failed_after_completion_is_ignored(catalog, draft):
    await reconciler.reconcile("order_1", "pay_1", draft, catalog)
    order = await reconciler.mark_failed("order_1", "pay_0")
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.order_status == OrderStatus.PROCESSING


async def test_mark_failed_without_order_creates_nothing(db):
    assert await reconciler.mark_failed("order_unknown", "pay_x") is None
    assert await Order.find_all().count() == 0


async def test_invoice_number_format():
    from datetime import datetime
    number = reconciler.generate_invoice_number(datetime(2026, 3, 7))
    prefix, date, serial = number.split("-")
    assert prefix == "INV"
    assert date == "20260307"
    assert len(serial) == 5 and serial.isdigit()


async def test_paid_amount_within_line_tolerance_is_accepted(catalog, draft):
    order = await reconciler.reconcile("order_1", "pay_1", draft, catalog, paid_amount=Decimal("315.02"))
    assert order.amount == 315.0
    assert order.amount_paid == 315.02


async def test_paid_amount_mismatch_on_create_writes_nothing(catalog, draft):
    with pytest.raises(AmountMismatch) as exc:
        await reconciler.reconcile("order_1", "pay_1", draft, catalog, paid_amount=Decimal("1.00"))
    assert exc.value.details == {"paid": "1.00", "expected": "315.00"}
    assert await Order.find_all().count() == 0


async def test_paid_amount_mismatch_on_pending_order_writes_nothing(catalog):
    pending = await _pending_order()
    with pytest.raises(AmountMismatch):
        await reconciler.reconcile("order_pending", "pay_9", None, catalog, paid_amount=Decimal("1.00"))
    unchanged = await orders_service.get_order(str(pending.id))
    assert unchanged.payment_status == PaymentStatus.PENDING
    assert unchanged.amount_paid is None


async def test_pending_order_records_paid_amount(catalog):
    await _pending_order()
    order = await reconciler.reconcile("order_pending", "pay_9", None, catalog, paid_amount=Decimal("210.00"))
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.amount_paid == 210.0

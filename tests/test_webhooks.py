import json
from decimal import Decimal

import pytest

from app.models.failed_webhook import FailedWebhook
from app.models.order import Order, OrderStatus, PaymentStatus
from app.services import reconciler
from app.services import webhooks as webhooks_service

from conftest import ADMIN_HEADERS, sign_body, webhook_body

pytestmark = pytest.mark.asyncio


async def _post(client, body: bytes, signature: str | None = None, event_id: str = "evt_1"):
    headers = {"Content-Type": "application/json", "X-Razorpay-Event-Id": event_id}
    headers["X-Razorpay-Signature"] = sign_body(body) if signature is None else signature
    return await client.post("/payment/webhook", content=body, headers=headers)


async def test_captured_creates_order(client, order_data):
    r = await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data))
    assert r.status_code == 200
    assert r.json() == {"received": True}
    order = await Order.find_one(Order.razorpay_order_id == "order_1")
    assert order.razorpay_payment_id == "pay_1"
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.order_status == OrderStatus.PROCESSING
    assert order.gst_amount == 15.0
    assert order.customer_email == "asha@example.com"


async def test_tampered_body_rejected(client, order_data):
    body = webhook_body("payment.captured", "order_1", "pay_1", order_data)
    signature = sign_body(body)
    r = await _post(client, body.replace(b"pay_1", b"pay_2"), signature=signature)
    assert r.status_code == 401
    assert await Order.find_all().count() == 0
    assert await FailedWebhook.find_all().count() == 0


async def test_missing_signature_rejected(client, order_data):
    body = webhook_body("payment.captured", "order_1", "pay_1", order_data)
    r = await client.post("/payment/webhook", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 401
    assert r.json()["success"] is False
    assert await Order.find_all().count() == 0


async def test_duplicate_delivery_yields_one_order(client, order_data):
    body = webhook_body("payment.captured", "order_1", "pay_1", order_data)
    for _ in range(3):
        r = await _post(client, body)
        assert r.status_code == 200
    assert await Order.find_all().count() == 1


async def test_order_paid_after_payment_captured(client, order_data):
    await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data), event_id="evt_1")
    await _post(client, webhook_body("order.paid", "order_1", "pay_1", order_data), event_id="evt_2")
    assert await Order.find_all().count() == 1
    assert await FailedWebhook.find_all().count() == 0


async def test_amount_taken_from_payment_when_draft_has_none(client, order_data):
    order_data.pop("amount")
    r = await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data, amount=31500))
    assert r.status_code == 200
    order = await Order.find_one(Order.razorpay_order_id == "order_1")
    assert order.amount == 315.0


async def test_payment_failed_for_unknown_order_is_noop(client):
    r = await _post(client, webhook_body("payment.failed", "order_1", "pay_1", include_order=False))
    assert r.status_code == 200
    assert await Order.find_all().count() == 0
    assert await FailedWebhook.find_all().count() == 0


async def test_payment_failed_after_capture_keeps_order_paid(client, order_data):
    await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data))
    await _post(client, webhook_body("payment.failed", "order_1", "pay_0", include_order=False), event_id="evt_2")
    order = await Order.find_one(Order.razorpay_order_id == "order_1")
    assert order.payment_status == PaymentStatus.COMPLETED


async def test_unknown_event_acknowledged(client):
    r = await _post(client, webhook_body("refund.processed", "order_1", "pay_1"))
    assert r.status_code == 200
    assert await Order.find_all().count() == 0
    assert await FailedWebhook.find_all().count() == 0


async def test_malformed_json_is_dead_lettered(client):
    body = b'{"event": "payment.captured", '
    r = await _post(client, body, event_id="evt_bad")
    assert r.status_code == 200
    record = await FailedWebhook.find_one(FailedWebhook.event_id == "evt_bad")
    assert record.transient is False
    assert record.raw_body == body.decode()


async def test_capture_without_order_data_is_dead_lettered(client):
    r = await _post(client, webhook_body("payment.captured", "order_1", "pay_1"), event_id="evt_nodata")
    assert r.status_code == 200
    assert await Order.find_all().count() == 0
    record = await FailedWebhook.find_one(FailedWebhook.event_id == "evt_nodata")
    assert record.event == "payment.captured"
    assert record.transient is False
    assert record.payload["payload"]["payment"]["entity"]["id"] == "pay_1"


async def test_processing_error_is_acknowledged_and_replayable(client, catalog, order_data, monkeypatch):
    real_reconcile = reconciler.reconcile

    async def store_down(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(reconciler, "reconcile", store_down)
    r = await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data), event_id="evt_down")
    assert r.status_code == 200
    record = await FailedWebhook.find_one(FailedWebhook.event_id == "evt_down")
    assert record.transient is True
    assert record.reason == "store unavailable"

    monkeypatch.setattr(reconciler, "reconcile", real_reconcile)
    result = await webhooks_service.replay_transient_failures(catalog)
    assert result == {"attempted": 1, "resolved": 1, "failed": 0}
    record = await FailedWebhook.get(record.id)
    assert record.resolved_at is not None
    assert record.retries == 1
    assert await Order.find_all().count() == 1

    # Resolved records are not picked up again
    assert (await webhooks_service.replay_transient_failures(catalog))["attempted"] == 0


async def test_replay_respects_retry_cap(catalog, order_data):
    payload = json.loads(webhook_body("payment.captured", "order_1", "pay_1", order_data))
    await FailedWebhook(event="payment.captured", payload=payload, reason="x", transient=True, retries=5).insert()
    result = await webhooks_service.replay_transient_failures(catalog, max_retries=5)
    assert result["attempted"] == 0
    assert await Order.find_all().count() == 0


async def test_admin_replay(client, order_data):
    payload = json.loads(webhook_body("payment.captured", "order_1", "pay_1", order_data))
    record = FailedWebhook(event="payment.captured", event_id="evt_9", payload=payload, reason="timeout", transient=True)
    await record.insert()

    r = await client.get("/admin/webhooks/failed", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    assert [i["event_id"] for i in r.json()["items"]] == ["evt_9"]

    r = await client.post(f"/admin/webhooks/failed/{record.id}/replay", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    assert r.json()["resolved_at"] is not None
    assert await Order.find_all().count() == 1

    r = await client.get("/admin/webhooks/failed", headers=ADMIN_HEADERS)
    assert r.json()["items"] == []


async def test_admin_replay_unknown_id(client):
    r = await client.post("/admin/webhooks/failed/not-an-id/replay", headers=ADMIN_HEADERS)
    assert r.status_code == 404


async def test_failed_replay_records_reason(catalog):
    record = FailedWebhook(event="payment.captured", payload={"event": "payment.captured", "payload": {}}, transient=True)
    await record.insert()
    result = await webhooks_service.replay(record, catalog)
    assert result.resolved_at is None
    assert result.retries == 1
    assert result.transient is False


async def test_underpaid_capture_is_dead_lettered(client, order_data):
    r = await _post(client, webhook_body("payment.captured", "order_1", "pay_1", order_data, amount=100), event_id="evt_short")
    assert r.status_code == 200
    assert await Order.find_all().count() == 0
    record = await FailedWebhook.find_one(FailedWebhook.event_id == "evt_short")
    assert record.transient is False
    assert record.reason.startswith("Paid amount 1.00")


def test_paid_amount_falls_back_to_order_entity():
    event = webhooks_service.parse_event(
        {"event": "order.paid", "payload": {"order": {"entity": {"id": "order_1", "amount_paid": 31500}}}}
    )
    assert event.paid_amount == Decimal("315.00")
    assert webhooks_service.parse_event({"event": "order.paid", "payload": {}}).paid_amount is None

"""
Integration tests for the PayU webhook and return endpoints using the HTTPX test client.
Covers signature verification, journaling and idempotent order updates.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from checkout.models import Order, OrderStatus, WebhookEvent
from checkout.schemas import LineItem
from checkout.services.inventory import get_stock
from checkout.services.orders import create_pending_order, get_order
from checkout.services.reconciliation import InboundDelivery, PaymentReconciler, Source
from checkout.services.signature import SignatureVerifier
from conftest import CREDENTIALS, signed_notification


@pytest_asyncio.fixture
async def pending(db_session, catalog):
    return await create_pending_order(
        db_session, [LineItem(product="prod-a", quantity=2)], {"email": "asha@example.com"}
    )


async def _events(session, txnid=None):
    stmt = select(WebhookEvent).order_by(WebhookEvent.id)
    if txnid:
        stmt = stmt.where(WebhookEvent.txnid == txnid)
    return (await session.execute(stmt.execution_options(populate_existing=True))).scalars().all()


@pytest.mark.asyncio
async def test_valid_webhook_marks_order_paid(client, db_session, pending, enqueued):
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    assert resp.text == "OK"
    order = await get_order(db_session, order_id=pending.id)
    assert order.is_paid is True
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_result == {"id": f"pay_{pending.txnid}", "status": "success"}
    enqueued.assert_called_once_with(pending.id)

    [event] = await _events(db_session, pending.txnid)
    assert event.hash_valid is True
    assert event.source == "webhook"
    assert event.failure_reason is None
    assert f"txnid={pending.txnid}" in event.raw_body


@pytest.mark.asyncio
async def test_invalid_hash_rejected_but_journaled(client, db_session, pending, enqueued):
    form = signed_notification(txnid=pending.txnid, amount="200.00")
    form["amount"] = "2.00"

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 400
    assert resp.text == "Invalid hash"
    assert (await get_order(db_session, order_id=pending.id)).is_paid is False
    enqueued.assert_not_called()

    [event] = await _events(db_session, pending.txnid)
    assert event.hash_valid is False
    assert event.failure_reason == "Invalid hash"


@pytest.mark.asyncio
async def test_non_success_status_is_400(client, db_session, pending):
    form = signed_notification(txnid=pending.txnid, amount="200.00", status="failure")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 400
    assert resp.text == "Payment not successful"
    order = await get_order(db_session, order_id=pending.id)
    assert order.is_paid is False
    assert order.status == OrderStatus.PENDING.value
    assert order.payment_result["status"] == "failure"


@pytest.mark.asyncio
async def test_origin_allow_list(client, db_session, pending, override_settings):
    override_settings(payu_allowed_ips="10.0.0.1, 10.0.0.2")
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 403
    assert (await get_order(db_session, order_id=pending.id)).is_paid is False
    [event] = await _events(db_session, pending.txnid)
    assert event.failure_reason == "IP not allowed"

    # The browser redirect is not origin-checked
    resp = await client.post("/api/payu/success", data=form)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_allow_listed_origin_accepted(client, db_session, pending, override_settings):
    # ASGITransport reports the client as 127.0.0.1
    override_settings(payu_allowed_ips="127.0.0.1")
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_allow_list_rejects_unknown_origin(session_factory, db_session, pending):
    reconciler = PaymentReconciler(
        session_factory, SignatureVerifier(CREDENTIALS), allowed_ips=["10.0.0.1"]
    )
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    result = await reconciler.handle(InboundDelivery(source=Source.WEBHOOK, form=form, ip=None))

    assert result.http_status == 403
    assert result.outcome == "forbidden"
    assert (await get_order(db_session, order_id=pending.id)).is_paid is False
    [event] = await _events(db_session, pending.txnid)
    assert event.failure_reason == "IP not allowed"
    assert event.ip is None


@pytest.mark.asyncio
async def test_duplicate_webhook_is_acknowledged_once_applied(client, db_session, pending, enqueued):
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    first = await client.post("/api/payu/webhook", data=form)
    snapshot = (await get_order(db_session, order_id=pending.id)).paid_at
    second = await client.post("/api/payu/webhook", data=form)

    assert first.status_code == second.status_code == 200
    assert (await get_order(db_session, order_id=pending.id)).paid_at == snapshot
    assert len(await _events(db_session, pending.txnid)) == 2
    enqueued.assert_called_once()
    assert await get_stock(db_session, "prod-a") == 3


@pytest.mark.parametrize("first, second", [("success", "webhook"), ("webhook", "success")])
@pytest.mark.asyncio
async def test_arrival_order_does_not_matter(client, db_session, pending, enqueued, first, second):
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    for endpoint in (first, second):
        resp = await client.post(f"/api/payu/{endpoint}", data=form)
        assert resp.status_code == 200

    order = await get_order(db_session, order_id=pending.id)
    assert order.is_paid is True
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_result == {"id": f"pay_{pending.txnid}", "status": "success"}
    assert await get_stock(db_session, "prod-a") == 3
    enqueued.assert_called_once_with(pending.id)


@pytest.mark.asyncio
async def test_success_redirect_message(client, pending):
    form = signed_notification(txnid=pending.txnid, amount="200.00")
    resp = await client.post("/api/payu/success", data=form)
    assert resp.text == "Payment successful"


@pytest.mark.asyncio
async def test_failure_redirect_records_attempt(client, db_session, pending):
    form = signed_notification(
        txnid=pending.txnid, amount="200.00", status="failure",
        mode="NB", error="E000", unmappedstatus="userCancelled",
    )

    resp = await client.post("/api/payu/failure", data=form)

    assert resp.status_code == 200
    assert resp.text == "Payment failed"
    [event] = await _events(db_session, pending.txnid)
    assert event.source == "redirect_failure"
    assert event.failure_reason is None
    order = await get_order(db_session, order_id=pending.id)
    assert order.is_paid is False
    assert order.payment_result == {
        "id": f"pay_{pending.txnid}",
        "status": "failure",
        "mode": "NB",
        "error": "E000",
        "unmappedstatus": "userCancelled",
    }


@pytest.mark.asyncio
async def test_forged_success_redirect_rejected(client, db_session, pending):
    form = signed_notification(txnid=pending.txnid, amount="200.00")
    form["hash"] = "0" * 128

    resp = await client.post("/api/payu/success", data=form)

    assert resp.status_code == 400
    assert (await get_order(db_session, order_id=pending.id)).is_paid is False


@pytest.mark.asyncio
async def test_unknown_product_webhook_acknowledged_without_order(client, db_session, catalog, enqueued):
    form = signed_notification(
        txnid="TXN-GHOST",
        amount="10.00",
        products=json.dumps([{"product": "ghost-product", "quantity": 1}]),
    )

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    count = (await db_session.execute(select(func.count()).select_from(Order))).scalar_one()
    assert count == 0
    [event] = await _events(db_session, "TXN-GHOST")
    assert event.hash_valid is True
    assert event.failure_reason == "Webhook references missing product: ghost-product"
    enqueued.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_order_with_products_is_created(client, db_session, catalog, enqueued):
    form = signed_notification(
        txnid="TXN-NEW",
        amount="100.00",
        products=json.dumps([{"product": "prod-a", "quantity": 1}]),
        shippingAddress=json.dumps({"city": "Pune"}),
    )

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    order = await get_order(db_session, txnid="TXN-NEW")
    assert order.is_paid is True
    assert await get_stock(db_session, "prod-a") == 4
    enqueued.assert_called_once_with(order.id)


@pytest.mark.asyncio
async def test_malformed_products_flagged_for_review(client, db_session, catalog):
    form = signed_notification(txnid="TXN-BAD", amount="1.00", products="[not json")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    [event] = await _events(db_session, "TXN-BAD")
    assert event.failure_reason.startswith("Malformed products")


@pytest.mark.asyncio
async def test_unknown_order_without_products_flagged(client, db_session):
    form = signed_notification(txnid="TXN-NOBODY", amount="1.00")

    resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    [event] = await _events(db_session, "TXN-NOBODY")
    assert event.failure_reason == "No order for txnid TXN-NOBODY"


@pytest.mark.asyncio
async def test_journal_is_written_before_the_order_update(client, db_session, pending):
    """If reconciliation blows up after journaling, the event is kept and acknowledged."""
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    with patch(
        "checkout.services.orders.apply_payment_confirmation",
        new=AsyncMock(side_effect=RuntimeError("db went away")),
    ):
        resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    [event] = await _events(db_session, pending.txnid)
    assert event.hash_valid is True
    assert event.failure_reason == "Exception: db went away"
    assert (await get_order(db_session, order_id=pending.id)).is_paid is False


@pytest.mark.asyncio
async def test_journal_failure_still_acknowledges(client, db_session, pending):
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    with patch(
        "checkout.services.journal.EventJournal.record", new=AsyncMock(return_value=None)
    ):
        resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 200
    assert (await get_order(db_session, order_id=pending.id)).is_paid is True


@pytest.mark.asyncio
async def test_unexpected_error_without_journal_asks_for_redelivery(client, pending):
    form = signed_notification(txnid=pending.txnid, amount="200.00")

    with patch(
        "checkout.services.journal.EventJournal.record", new=AsyncMock(return_value=None)
    ), patch(
        "checkout.services.orders.apply_payment_confirmation",
        new=AsyncMock(side_effect=RuntimeError("boom")),
    ):
        resp = await client.post("/api/payu/webhook", data=form)

    assert resp.status_code == 500
    assert resp.text == "Server error"

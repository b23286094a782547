"""
Unit tests for pending-order creation, catalog pricing and status transitions.
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from checkout.errors import InvalidTransition, NotFound, ValidationError
from checkout.models import OrderStatus
from checkout.schemas import CreatePendingOrderRequest, LineItem
from checkout.services.catalog import FixedPrice, SizedPrice, UnknownProducts, resolve_price
from checkout.services.inventory import get_stock
from checkout.services.orders import (
    can_transition,
    create_pending_order,
    get_order,
    transition_order,
)


def test_resolve_price_variants():
    assert resolve_price("p", 100) == FixedPrice(Decimal("100.00"))
    assert resolve_price("p", "12.345") == FixedPrice(Decimal("12.35"))

    sized = resolve_price("p", [{"size": "S", "amount": 10}, {"size": "M", "amount": "12.5"}])
    assert isinstance(sized, SizedPrice)
    assert sized.unit_price("M") == Decimal("12.50")
    # Unknown or absent size falls back to the first entry
    assert sized.unit_price("XXL") == Decimal("10.00")
    assert sized.unit_price() == Decimal("10.00")


@pytest.mark.parametrize("raw", [None, "free", -1, [], [{"size": "S"}], True])
def test_unusable_price_is_rejected(raw):
    with pytest.raises(ValidationError):
        resolve_price("p", raw)


@pytest.mark.asyncio
async def test_total_uses_catalog_price_not_client_price(db_session, catalog):
    body = CreatePendingOrderRequest.model_validate(
        {
            "products": [{"product": "prod-a", "quantity": 2, "price": 999999}],
            "shippingAddress": {"email": "a@b.io"},
        }
    )
    order = await create_pending_order(db_session, body.products, {"email": "a@b.io"})

    assert order.total_price == Decimal("200.00")
    assert [i.unit_price for i in order.items] == [Decimal("100.00")]
    assert order.status == OrderStatus.PENDING.value
    assert order.is_paid is False
    assert order.txnid.startswith("tx_")


@pytest.mark.asyncio
async def test_sized_and_mixed_lines_total(db_session, catalog):
    order = await create_pending_order(
        db_session,
        [
            LineItem(product="prod-s", quantity=2, size="L"),
            LineItem(product="prod-b", quantity=1),
        ],
        {},
    )
    assert order.total_price == Decimal("549.50")


@pytest.mark.asyncio
async def test_unknown_products_are_named(db_session, catalog):
    with pytest.raises(UnknownProducts) as exc_info:
        await create_pending_order(
            db_session,
            [LineItem(product="ghost-1", quantity=1), LineItem(product="prod-a", quantity=1)],
            {},
        )
    assert exc_info.value.product_ids == ["ghost-1"]
    assert exc_info.value.status_code == 404
    assert await get_stock(db_session, "prod-a") == 5


@pytest.mark.asyncio
async def test_get_order_requires_a_reference(db_session):
    with pytest.raises(ValidationError):
        await get_order(db_session)
    with pytest.raises(NotFound):
        await get_order(db_session, txnid="missing")


def test_transition_table():
    assert can_transition("pending", "confirmed")
    assert can_transition("confirmed", "processing")
    assert can_transition("shipped", "cancelled")
    assert not can_transition("pending", "shipped")
    assert not can_transition("delivered", "cancelled")
    assert not can_transition("cancelled", "pending")


@pytest.mark.asyncio
async def test_pending_order_cannot_be_confirmed_by_hand(db_session, catalog):
    order = await create_pending_order(db_session, [LineItem(product="prod-a", quantity=1)], {})
    with pytest.raises(InvalidTransition):
        await transition_order(db_session, order.id, OrderStatus.CONFIRMED)


@pytest.mark.asyncio
async def test_cancel_releases_stock(db_session, catalog):
    order = await create_pending_order(db_session, [LineItem(product="prod-a", quantity=4)], {})
    assert await get_stock(db_session, "prod-a") == 1

    cancelled = await transition_order(db_session, order.id, OrderStatus.CANCELLED)

    assert cancelled.status == OrderStatus.CANCELLED.value
    assert await get_stock(db_session, "prod-a") == 5
    # Terminal
    with pytest.raises(InvalidTransition):
        await transition_order(db_session, order.id, OrderStatus.PROCESSING)


@pytest.mark.asyncio
async def test_same_status_is_a_no_op(db_session, catalog):
    order = await create_pending_order(db_session, [LineItem(product="prod-a", quantity=1)], {})
    again = await transition_order(db_session, order.id, OrderStatus.PENDING)
    assert again.status == OrderStatus.PENDING.value

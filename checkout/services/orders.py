"""
Order lifecycle: pending-order creation and the payment state machine.

    pending ──► confirmed ──► processing ──► shipped ──► delivered
       │            │              │             │
       └────────────┴──────────────┴─────────────┴──► cancelled

Only a verified payment moves an order out of ``pending``. The paid
transition is a single conditional UPDATE (``is_paid = false``), so when
duplicate or racing deliveries arrive for the same txnid exactly one of
them applies the financial effects and the others observe a no-op.
"""
from __future__ import annotations

import enum
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from pydantic import TypeAdapter
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import (
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from checkout.models import Order, OrderItem, OrderStatus
from checkout.schemas import GatewayNotification, LineItem
from checkout.services import inventory, notifications
from checkout.services.catalog import PricedLine, UnknownProducts, price_line_items

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

_line_items = TypeAdapter(List[LineItem])


def can_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def new_txnid() -> str:
    return f"tx_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same_amount(notified: str, total: Decimal) -> bool:
    try:
        return Decimal(notified) == Decimal(total)
    except (InvalidOperation, TypeError):
        return False


class ConfirmationOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_PAID = "already_paid"
    CREATED = "created"
    UNKNOWN_ORDER = "unknown_order"
    NEEDS_REVIEW = "needs_review"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    order_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return self.outcome in (ConfirmationOutcome.NEEDS_REVIEW, ConfirmationOutcome.UNKNOWN_ORDER)


@dataclass
class FallbackOrder:
    """Order contents a notification asserts for a txnid we have never seen."""
    items: List[LineItem]
    shipping_address: Dict[str, Any] = field(default_factory=dict)


def parse_fallback(notification: GatewayNotification) -> Optional[FallbackOrder]:
    """
    Extract the embedded product list, if any. Raises ValidationError when the
    notification carries one that cannot be parsed.
    """
    if not notification.products:
        return None
    try:
        items = _line_items.validate_json(notification.products)
        shipping = json.loads(notification.shipping_address) if notification.shipping_address else {}
    except (PydanticValidationError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Malformed products in notification: {exc}") from exc
    if not items:
        raise ValidationError("Notification carries an empty product list")
    if not isinstance(shipping, dict):
        raise ValidationError("shippingAddress must be a JSON object")
    return FallbackOrder(items=items, shipping_address=shipping)


# ── Pending orders ───────────────────────────────────────────────────────────

def _build_order(
    *,
    txnid: str,
    lines: Sequence[PricedLine],
    total: Decimal,
    shipping_address: Dict[str, Any],
    user_id: Optional[str],
    **state: Any,
) -> Order:
    return Order(
        user_id=user_id,
        txnid=txnid,
        shipping_address=shipping_address,
        payment_method="payu",
        total_price=total,
        items=[
            OrderItem(
                product_id=line.product_id,
                size=line.size,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in lines
        ],
        **state,
    )


async def create_pending_order(
    session: AsyncSession,
    items: Sequence[LineItem],
    shipping_address: Dict[str, Any],
    user_id: Optional[str] = None,
) -> Order:
    """
    Price the items from the catalog, reserve their stock and persist a
    pending order with a fresh txnid. Raises NotFound / InsufficientStock.
    """
    lines, total = await price_line_items(session, items)
    taken = await inventory.reserve_stock(
        session, [inventory.ReservationLine(line.product_id, line.quantity) for line in lines]
    )

    order = _build_order(
        txnid=new_txnid(),
        lines=lines,
        total=total,
        shipping_address=shipping_address,
        user_id=user_id,
        is_paid=False,
        status=OrderStatus.PENDING.value,
    )
    session.add(order)
    await session.flush()
    inventory.record_reservations(session, order.id, taken)
    await session.commit()

    logger.info("Pending order %s created txnid=%s total=%s", order.id, order.txnid, total)
    return order


async def get_order(session: AsyncSession, *, order_id: str | None = None, txnid: str | None = None) -> Order:
    stmt = select(Order).execution_options(populate_existing=True)
    if order_id:
        stmt = stmt.where(Order.id == order_id)
    elif txnid:
        stmt = stmt.where(Order.txnid == txnid)
    else:
        raise ValidationError("orderId or txnid is required")
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order not found: {order_id or txnid}")
    return order


async def list_user_orders(session: AsyncSession, user_id: str) -> List[Order]:
    """Orders owned by *user_id*, newest first."""
    rows = await session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id)
    )
    return list(rows.scalars().all())


# ── Payment state machine ────────────────────────────────────────────────────

async def apply_payment_confirmation(
    session: AsyncSession,
    txnid: str,
    status: str,
    reference: str,
    *,
    amount: Optional[str] = None,
    fallback: Optional[FallbackOrder] = None,
    unknown_order_policy: str = "create",
) -> ConfirmationResult:
    """
    Apply a verified successful payment to the order identified by *txnid*.

    The caller must already have journaled the notification. Commits on
    success; enqueues exactly one confirmation notification for the delivery
    that wins the paid transition.
    """
    order = (
        await session.execute(
            select(Order)
            .where(Order.txnid == txnid)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    if order is None:
        return await _confirm_unknown(
            session, txnid, status, reference,
            amount=amount, fallback=fallback, policy=unknown_order_policy,
        )

    if order.is_paid:
        return await _already_paid(session, order)

    if amount is not None and not _same_amount(amount, order.total_price):
        reason = f"Amount mismatch: notified {amount}, order total {order.total_price}"
        logger.warning("Order %s txnid=%s not confirmed – %s", order.id, txnid, reason)
        return ConfirmationResult(ConfirmationOutcome.NEEDS_REVIEW, order.id, reason)

    order_id = order.id
    now = _now()
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.is_paid.is_(False),
            Order.status == OrderStatus.PENDING.value,
        )
        .values(
            is_paid=True,
            paid_at=now,
            payment_result={"id": reference, "status": status},
            status=OrderStatus.CONFIRMED.value,
            updated_at=now,
        )
    )
    if result.rowcount == 1:
        await session.commit()
        logger.info("Order %s paid txnid=%s reference=%s", order_id, txnid, reference)
        notifications.enqueue(order_id)
        return ConfirmationResult(ConfirmationOutcome.APPLIED, order_id)

    # Lost the race, or the order is not in a payable state. Rollback expires
    # every loaded instance, so only the bound id is used from here on.
    await session.rollback()
    order = await get_order(session, order_id=order_id)
    if order.is_paid:
        return await _already_paid(session, order)

    reason = f"Payment received for {order.status} order"
    logger.warning("Order %s txnid=%s not confirmed – %s", order.id, txnid, reason)
    return ConfirmationResult(ConfirmationOutcome.NEEDS_REVIEW, order.id, reason)


async def _already_paid(session: AsyncSession, order: Order) -> ConfirmationResult:
    """Idempotent branch: no financial mutation, at most a status touch-up."""
    if order.status == OrderStatus.PENDING.value:
        await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CONFIRMED.value, updated_at=_now())
        )
        await session.commit()
        logger.info("Order %s status normalised to confirmed", order.id)
    logger.info("Duplicate confirmation for order %s txnid=%s ignored", order.id, order.txnid)
    return ConfirmationResult(ConfirmationOutcome.ALREADY_PAID, order.id)


async def _confirm_unknown(
    session: AsyncSession,
    txnid: str,
    status: str,
    reference: str,
    *,
    amount: Optional[str],
    fallback: Optional[FallbackOrder],
    policy: str,
) -> ConfirmationResult:
    if policy != "create" or fallback is None:
        logger.warning("No order for txnid=%s; acknowledging for manual review", txnid)
        return ConfirmationResult(
            ConfirmationOutcome.UNKNOWN_ORDER, reason=f"No order for txnid {txnid}"
        )

    try:
        lines, total = await price_line_items(session, fallback.items)
    except UnknownProducts as exc:
        return ConfirmationResult(
            ConfirmationOutcome.NEEDS_REVIEW,
            reason=f"Webhook references missing product: {exc.product_ids[0]}",
        )
    except ValidationError as exc:
        return ConfirmationResult(ConfirmationOutcome.NEEDS_REVIEW, reason=exc.message)

    if amount is not None and not _same_amount(amount, total):
        return ConfirmationResult(
            ConfirmationOutcome.NEEDS_REVIEW,
            reason=f"Amount mismatch: notified {amount}, catalog total {total}",
        )

    try:
        taken = await inventory.reserve_stock(
            session, [inventory.ReservationLine(line.product_id, line.quantity) for line in lines]
        )
    except InsufficientStock as exc:
        await session.rollback()
        return ConfirmationResult(ConfirmationOutcome.NEEDS_REVIEW, reason=exc.message)

    now = _now()
    order = _build_order(
        txnid=txnid,
        lines=lines,
        total=total,
        shipping_address=fallback.shipping_address,
        user_id=None,
        is_paid=True,
        paid_at=now,
        payment_result={"id": reference, "status": status},
        status=OrderStatus.CONFIRMED.value,
    )
    session.add(order)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent delivery created this txnid first; drop our reservation with it
        await session.rollback()
        logger.info("Order for txnid=%s created concurrently; treating as duplicate", txnid)
        existing = await get_order(session, txnid=txnid)
        return ConfirmationResult(ConfirmationOutcome.ALREADY_PAID, existing.id)

    inventory.record_reservations(session, order.id, taken)
    await session.commit()
    logger.info("Order %s created from notification txnid=%s total=%s", order.id, txnid, total)
    notifications.enqueue(order.id)
    return ConfirmationResult(ConfirmationOutcome.CREATED, order.id)


async def record_payment_failure(
    session: AsyncSession,
    txnid: str,
    status: str,
    reference: str,
    details: Optional[Dict[str, str]] = None,
) -> bool:
    """
    Note a failed/cancelled payment attempt on an unpaid order. The order
    stays pending so the customer can initiate payment again. *details*
    carries gateway diagnostics (mode, error, unmappedstatus) when present.
    """
    payment_result = {**(details or {}), "id": reference, "status": status}
    result = await session.execute(
        update(Order)
        .where(Order.txnid == txnid, Order.is_paid.is_(False))
        .values(payment_result=payment_result, updated_at=_now())
    )
    await session.commit()
    if result.rowcount:
        logger.info("Payment attempt txnid=%s recorded as %s", txnid, status)
    return bool(result.rowcount)


# ── Fulfillment transitions ──────────────────────────────────────────────────

async def transition_order(session: AsyncSession, order_id: str, target: OrderStatus) -> Order:
    """
    Move an order along the fulfillment path. Confirmation is reserved for
    the payment path; cancelling releases the order's stock reservations.
    """
    order = await get_order(session, order_id=order_id)
    current = OrderStatus(order.status)
    if current == target:
        return order
    if target == OrderStatus.CONFIRMED or not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)

    result = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current.value)
        .values(status=target.value, updated_at=_now())
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidTransition(current.value, target.value)

    if target == OrderStatus.CANCELLED:
        await inventory.release_reservations(session, order.id)

    await session.commit()
    logger.info("Order %s moved %s -> %s", order.id, current.value, target.value)
    return await get_order(session, order_id=order.id)

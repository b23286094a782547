"""
Core inventory service: conditional stock decrements with compensation.

Each per-product decrement is a single conditional UPDATE
(``count_in_stock >= qty``), so concurrent reservations never drive a
counter negative. A multi-line reservation is not atomic across products:
when a later line fails, the lines already taken are credited back before
InsufficientStock is raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import InsufficientStock
from checkout.models import Product, StockReservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationLine:
    product_id: str
    quantity: int


async def _take(session: AsyncSession, product_id: str, quantity: int) -> bool:
    """Decrement stock only if enough is on hand. Returns False otherwise."""
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id, Product.count_in_stock >= quantity)
        .values(count_in_stock=Product.count_in_stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _credit(session: AsyncSession, product_id: str, quantity: int) -> None:
    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(count_in_stock=Product.count_in_stock + quantity)
        .execution_options(synchronize_session=False)
    )


async def reserve_stock(
    session: AsyncSession,
    lines: Sequence[ReservationLine],
) -> List[ReservationLine]:
    """
    Decrement stock for every line in input order.

    On the first line that cannot be satisfied, every line already taken in
    this attempt is credited back and InsufficientStock(product_id) is raised.
    Returns the reserved lines on success. Does not commit.
    """
    taken: List[ReservationLine] = []
    for line in lines:
        if await _take(session, line.product_id, line.quantity):
            taken.append(line)
            logger.info("Stock reserved: product=%s qty=%d", line.product_id, line.quantity)
            continue

        logger.warning(
            "Insufficient stock for product=%s (requested %d); rolling back %d line(s)",
            line.product_id, line.quantity, len(taken),
        )
        await compensate(session, taken)
        raise InsufficientStock(line.product_id, line.quantity)

    return taken


async def compensate(session: AsyncSession, taken: Sequence[ReservationLine]) -> None:
    """Credit back lines taken by a reservation attempt that did not complete."""
    for line in reversed(taken):
        try:
            await _credit(session, line.product_id, line.quantity)
        except Exception:
            logger.exception(
                "Stock compensation failed: product=%s qty=%d needs manual correction",
                line.product_id, line.quantity,
            )
            raise
        logger.info("Stock credited back: product=%s qty=%d", line.product_id, line.quantity)


def record_reservations(
    session: AsyncSession, order_id: str, taken: Sequence[ReservationLine]
) -> None:
    for line in taken:
        session.add(
            StockReservation(
                order_id=order_id, product_id=line.product_id, quantity=line.quantity
            )
        )


async def release_reservations(session: AsyncSession, order_id: str) -> int:
    """
    Credit back every unreleased reservation of *order_id* exactly once.
    Returns the number of reservation rows released.
    """
    now = datetime.now(timezone.utc)
    rows = (
        await session.execute(
            select(StockReservation).where(
                StockReservation.order_id == order_id,
                StockReservation.released_at.is_(None),
            )
        )
    ).scalars().all()

    released = 0
    for row in rows:
        # Claim the row first so two concurrent cancellations cannot both credit it
        claimed = await session.execute(
            update(StockReservation)
            .where(StockReservation.id == row.id, StockReservation.released_at.is_(None))
            .values(released_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            continue
        await _credit(session, row.product_id, row.quantity)
        released += 1
        logger.info(
            "Reservation released: order=%s product=%s qty=%d",
            order_id, row.product_id, row.quantity,
        )
    return released


async def get_stock(session: AsyncSession, product_id: str) -> int:
    """Return current count_in_stock for a product (0 if unknown)."""
    value = (
        await session.execute(
            select(Product.count_in_stock).where(Product.id == product_id)
        )
    ).scalar_one_or_none()
    return value or 0

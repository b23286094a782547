"""
Catalog boundary: read-only product lookups and price resolution.

Stored prices come in two shapes (a bare number, or a list of per-size
entries). They are resolved here, once, into FixedPrice / SizedPrice so
that order code only ever sees a single Decimal per line.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import NotFound, ValidationError
from checkout.models import Product, User
from checkout.schemas import LineItem

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class FixedPrice:
    amount: Decimal

    def unit_price(self, size: Optional[str] = None) -> Decimal:
        return self.amount


@dataclass(frozen=True)
class SizedPrice:
    entries: Tuple[Tuple[str, Decimal], ...]

    def unit_price(self, size: Optional[str] = None) -> Decimal:
        if size is not None:
            for entry_size, amount in self.entries:
                if entry_size == size:
                    return amount
        # no size requested (or unknown size): first listed entry
        return self.entries[0][1]


Price = Union[FixedPrice, SizedPrice]


class UnknownProducts(NotFound):
    """Raised when line items name products the catalog does not have."""

    def __init__(self, product_ids: Sequence[str]):
        self.product_ids = list(dict.fromkeys(product_ids))
        super().__init__(f"Products not found: {', '.join(self.product_ids)}")


@dataclass(frozen=True)
class CatalogProduct:
    id: str
    name: str
    price: Price
    count_in_stock: int


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    size: Optional[str]
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


def _money(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise InvalidOperation(value)
    amount = Decimal(str(value))
    if not amount.is_finite() or amount < 0:
        raise InvalidOperation(value)
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def resolve_price(product_id: str, raw: Any) -> Price:
    """Turn a stored price value into a tagged price. Raises ValidationError."""
    try:
        if isinstance(raw, list):
            entries = tuple((str(e.get("size", "")), _money(e["amount"])) for e in raw)
            if not entries:
                raise InvalidOperation(raw)
            return SizedPrice(entries)
        return FixedPrice(_money(raw))
    except (InvalidOperation, KeyError, TypeError, AttributeError, ValueError):
        logger.error("Unusable price for product %s: %r", product_id, raw)
        raise ValidationError(f"Product {product_id} has no usable price")


async def fetch_products(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, CatalogProduct]:
    """Look up products by id. Ids that do not exist are simply absent."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    rows = (await session.execute(select(Product).where(Product.id.in_(ids)))).scalars().all()
    return {
        p.id: CatalogProduct(
            id=p.id,
            name=p.name,
            price=resolve_price(p.id, p.price),
            count_in_stock=p.count_in_stock,
        )
        for p in rows
    }


async def price_line_items(
    session: AsyncSession, items: Sequence[LineItem]
) -> Tuple[List[PricedLine], Decimal]:
    """
    Price every requested line from the catalog. Any client-side price is
    ignored. Raises NotFound naming every unknown product id.
    """
    if not items:
        raise ValidationError("No products in order")

    catalog = await fetch_products(session, (i.product for i in items))
    missing = [i.product for i in items if i.product not in catalog]
    if missing:
        raise UnknownProducts(missing)

    lines = [
        PricedLine(
            product_id=i.product,
            size=i.size,
            quantity=i.quantity,
            unit_price=catalog[i.product].price.unit_price(i.size),
        )
        for i in items
    ]
    total = sum((line.subtotal for line in lines), Decimal("0")).quantize(CENTS)
    return lines, total


async def get_user(session: AsyncSession, user_id: str | None) -> User | None:
    if not user_id:
        return None
    return await session.get(User, user_id)

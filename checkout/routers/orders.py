"""
Order endpoints.

POST  /api/orders/create-pending
GET   /api/orders/my
GET   /api/orders/{order_id}
PATCH /api/orders/{order_id}/status
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.database import get_db
from checkout.deps import current_user_id
from checkout.errors import ValidationError
from checkout.schemas import (
    CreatePendingOrderRequest,
    OrderOut,
    OrderStatusUpdate,
    PendingOrderResponse,
)
from checkout.services import orders

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post(
    "/create-pending",
    response_model=PendingOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_pending(
    body: CreatePendingOrderRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
) -> PendingOrderResponse:
    """
    Create an unpaid order priced from the catalog and reserve its stock.
    Prices sent by the client are ignored.
    """
    order = await orders.create_pending_order(
        db,
        body.products,
        body.shipping_address.model_dump(by_alias=True, exclude_none=True),
        user_id=user_id,
    )
    return PendingOrderResponse(order=OrderOut.model_validate(order), txnid=order.txnid)


@router.get("/my", response_model=List[OrderOut])
async def my_orders(
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
) -> List[OrderOut]:
    if not user_id:
        raise ValidationError("X-User-Id header is required")
    return [OrderOut.model_validate(o) for o in await orders.list_user_orders(db, user_id)]


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)) -> OrderOut:
    return OrderOut.model_validate(await orders.get_order(db, order_id=order_id))


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_status(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    order = await orders.transition_order(db, order_id, body.status)
    return OrderOut.model_validate(order)

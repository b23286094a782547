"""
Admin / operational endpoints.

GET  /admin/health
GET  /admin/webhook-events              (?needs_review=true&txnid=...&limit=&offset=)
POST /admin/webhook-events/{event_id}/replay
GET  /admin/stock
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.database import get_db
from checkout.deps import get_reconciler, require_admin_token
from checkout.models import Product, WebhookEvent
from checkout.schemas import HealthResponse, ReplayResult, StockRow, WebhookEventRow
from checkout.services.reconciliation import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get(
    "/webhook-events",
    response_model=List[WebhookEventRow],
    dependencies=[Depends(require_admin_token)],
)
async def list_webhook_events(
    needs_review: bool = Query(False, description="Only events carrying a failure reason"),
    txnid: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> List[WebhookEventRow]:
    stmt = select(WebhookEvent).order_by(WebhookEvent.id.desc())
    if needs_review:
        stmt = stmt.where(WebhookEvent.failure_reason.is_not(None))
    if txnid:
        stmt = stmt.where(WebhookEvent.txnid == txnid)
    rows = (await db.execute(stmt.limit(limit).offset(offset))).scalars().all()
    return [WebhookEventRow.model_validate(r) for r in rows]


@router.post(
    "/webhook-events/{event_id}/replay",
    response_model=ReplayResult,
    dependencies=[Depends(require_admin_token)],
)
async def replay_webhook_event(
    event_id: int,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> ReplayResult:
    result = await reconciler.replay(event_id)
    return ReplayResult(
        event_id=event_id,
        replay_event_id=result.event_id,
        outcome=result.outcome,
        http_status=result.http_status,
    )


@router.get(
    "/stock",
    response_model=List[StockRow],
    dependencies=[Depends(require_admin_token)],
)
async def list_stock(db: AsyncSession = Depends(get_db)) -> List[StockRow]:
    rows = (await db.execute(select(Product).order_by(Product.name, Product.id))).scalars().all()
    return [
        StockRow(product_id=r.id, name=r.name, count_in_stock=r.count_in_stock)
        for r in rows
    ]

"""
PayU gateway endpoints.

POST /api/payu/initiate   build a signed Hosted Checkout request
POST /api/payu/webhook    server-to-server notification
POST /api/payu/success    browser return after a successful payment
POST /api/payu/failure    browser return after a failed / cancelled payment

Gateway-facing endpoints answer in plain text; the gateway only cares about
the status code.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.database import get_db
from checkout.deps import (
    GatewayForm,
    get_builder,
    get_reconciler,
    read_gateway_form,
    return_base_url,
)
from checkout.schemas import InitiatePaymentRequest, PaymentInitiationResponse
from checkout.services.payment import PaymentInitiationBuilder, initiate_payment
from checkout.services.reconciliation import InboundDelivery, PaymentReconciler, Source

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payu", tags=["payu"])


@router.post(
    "/initiate",
    response_model=PaymentInitiationResponse,
    response_model_by_alias=True,
)
async def initiate(
    body: InitiatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    builder: PaymentInitiationBuilder = Depends(get_builder),
    base_url: str = Depends(return_base_url),
) -> PaymentInitiationResponse:
    request = await initiate_payment(
        db,
        builder,
        return_base_url=base_url,
        order_id=body.order_id,
        txnid=body.txnid,
    )
    return PaymentInitiationResponse(form_data=request.form_data, payment_url=request.payment_url)


async def _reconcile(source: Source, form: GatewayForm, reconciler: PaymentReconciler) -> PlainTextResponse:
    result = await reconciler.handle(
        InboundDelivery(
            source=source,
            form=form.fields,
            raw_body=form.raw_body,
            ip=form.ip,
            headers=form.headers,
        )
    )
    logger.info(
        "PayU %s txnid=%s -> %d %s (event=%s order=%s)",
        source.value, form.fields.get("txnid"), result.http_status,
        result.outcome, result.event_id, result.order_id,
    )
    return PlainTextResponse(result.message, status_code=result.http_status)


@router.post("/webhook", response_class=PlainTextResponse)
async def webhook(
    form: GatewayForm = Depends(read_gateway_form),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PlainTextResponse:
    return await _reconcile(Source.WEBHOOK, form, reconciler)


@router.post("/success", response_class=PlainTextResponse)
async def success(
    form: GatewayForm = Depends(read_gateway_form),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PlainTextResponse:
    return await _reconcile(Source.REDIRECT_SUCCESS, form, reconciler)


@router.post("/failure", response_class=PlainTextResponse)
async def failure(
    form: GatewayForm = Depends(read_gateway_form),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PlainTextResponse:
    return await _reconcile(Source.REDIRECT_FAILURE, form, reconciler)

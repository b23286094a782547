"""
PayU Checkout Reconciliation Service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout.errors import CheckoutError
from checkout.routers import admin, orders, payu
from checkout.services import notifications

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="PayU Checkout Reconciliation",
    version="1.0.0",
    description="Pending orders, PayU payment initiation and idempotent payment reconciliation.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

@app.exception_handler(CheckoutError)
async def _checkout_error(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request",
                "details": details,
            }
        },
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "UNEXPECTED", "message": "Internal server error"}},
    )

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(payu.router)
app.include_router(orders.router)
app.include_router(admin.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

@app.on_event("startup")
async def _startup() -> None:
    logger.info("Starting notification worker …")
    app.state.notification_worker = asyncio.create_task(
        notifications.worker(), name="notification-worker"
    )
    logger.info("Checkout service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    logger.info("Draining notification queue …")
    await notifications.drain(timeout=30)
    app.state.notification_worker.cancel()

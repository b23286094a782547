"""
Outbound order notifications (e.g. payment confirmation mail).

Architecture:
  - An asyncio.Queue receives NotificationJob items.
  - A background worker coroutine drains the queue with retries + dead-letter rows.
  - The order state machine enqueues a job after its transaction commits, so a
    failed notification can never undo a payment confirmation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select

from checkout.config import get_settings
from checkout.database import get_db_ctx
from checkout.models import NotificationFailure, Order
from checkout.services.catalog import get_user

logger = logging.getLogger(__name__)
settings = get_settings()

_TIMEOUT = httpx.Timeout(20.0)

# ── Job definition ───────────────────────────────────────────────────────────

@dataclass
class NotificationJob:
    order_id: str
    kind: str = "order_confirmed"
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Singleton queue ──────────────────────────────────────────────────────────

_queue: asyncio.Queue[NotificationJob] = asyncio.Queue(maxsize=10_000)


def enqueue(order_id: str, kind: str = "order_confirmed") -> None:
    """Non-blocking enqueue. Drops job and logs if queue is full."""
    job = NotificationJob(order_id=order_id, kind=kind)
    try:
        _queue.put_nowait(job)
    except asyncio.QueueFull:
        logger.error("Notification queue full – dropping %s for order=%s", kind, order_id)


# ── Worker ───────────────────────────────────────────────────────────────────

async def _build_payload(job: NotificationJob) -> Optional[Dict[str, Any]]:
    async with get_db_ctx() as session:
        order = (
            await session.execute(select(Order).where(Order.id == job.order_id))
        ).scalar_one_or_none()
        if order is None:
            return None
        user = await get_user(session, order.user_id)

    email = (order.shipping_address or {}).get("email") or (user.email if user else None)
    return {
        "event": job.kind,
        "order_id": order.id,
        "txnid": order.txnid,
        "status": order.status,
        "total_price": str(order.total_price),
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "email": email,
    }


async def _deliver(url: str, payload: Dict[str, Any]) -> bool:
    async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
        resp = await client.post(url, json=payload)
        if resp.is_success:
            return True
        logger.error(
            "Notification endpoint error order=%s status=%d body=%s",
            payload.get("order_id"), resp.status_code, resp.text[:300],
        )
        return False


async def _record_failure(job: NotificationJob, payload: dict, error: str, attempts: int) -> None:
    async with get_db_ctx() as session:
        now = datetime.now(timezone.utc)
        session.add(
            NotificationFailure(
                order_id=job.order_id,
                kind=job.kind,
                payload=payload,
                error=error,
                attempts=attempts,
                created_at=now,
                last_tried=now,
            )
        )


async def _handle_job(job: NotificationJob) -> None:
    url = settings.notify_webhook_url
    if not url:
        logger.info("Notifications disabled – skipping %s for order=%s", job.kind, job.order_id)
        return

    payload = await _build_payload(job)
    if payload is None:
        logger.warning("Order %s vanished before %s could be sent", job.order_id, job.kind)
        return

    max_retries = settings.notify_max_retries
    base_delay = settings.notify_retry_base_seconds
    last_error = ""

    for attempt in range(1, max_retries + 1):
        try:
            if await _deliver(url, payload):
                logger.debug(
                    "Sent %s for order=%s (attempt %d)", job.kind, job.order_id, attempt
                )
                return
            last_error = "notification endpoint returned non-success"
        except httpx.HTTPError as exc:
            last_error = str(exc)
            logger.warning(
                "Notification error order=%s attempt=%d/%d: %s",
                job.order_id, attempt, max_retries, exc,
            )

        if attempt < max_retries:
            await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    logger.error(
        "Notification %s failed after %d attempts for order=%s",
        job.kind, max_retries, job.order_id,
    )
    await _record_failure(job, payload, last_error, max_retries)


async def worker() -> None:
    """
    Runs as a long-lived background task.
    Drains the notification queue and handles each job.
    """
    logger.info("Notification worker started")
    while True:
        job = await _queue.get()
        try:
            await _handle_job(job)
        except Exception as exc:
            logger.exception("Unexpected error in notification worker: %s", exc)
        finally:
            _queue.task_done()


async def drain(timeout: Optional[float] = 30.0) -> None:
    """Wait for queued jobs to finish; *timeout* None waits indefinitely."""
    try:
        await asyncio.wait_for(_queue.join(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Notification queue did not drain within %.0f s", timeout)

"""
Unit tests for the outbound notification worker: retries and dead-letter rows.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from checkout.services import notifications
from checkout.services.notifications import NotificationJob

PAYLOAD = {"event": "order_confirmed", "order_id": "ord-1"}


@pytest.fixture
def configured():
    with patch.object(notifications.settings, "notify_webhook_url", "http://hooks.test/orders"), \
         patch.object(notifications.settings, "notify_max_retries", 3), \
         patch("checkout.services.notifications._build_payload", new=AsyncMock(return_value=PAYLOAD)), \
         patch("checkout.services.notifications.asyncio.sleep", new=AsyncMock()) as sleep, \
         patch("checkout.services.notifications._record_failure", new=AsyncMock()) as record:
        yield sleep, record


@pytest.mark.asyncio
async def test_delivered_first_time(configured):
    sleep, record = configured
    with patch("checkout.services.notifications._deliver", new=AsyncMock(return_value=True)) as deliver:
        await notifications._handle_job(NotificationJob(order_id="ord-1"))

    deliver.assert_awaited_once_with("http://hooks.test/orders", PAYLOAD)
    sleep.assert_not_awaited()
    record.assert_not_awaited()


@pytest.mark.asyncio
async def test_retries_with_backoff_then_succeeds(configured):
    sleep, record = configured
    deliver = AsyncMock(side_effect=[httpx.ConnectError("refused"), False, True])
    with patch("checkout.services.notifications._deliver", new=deliver):
        await notifications._handle_job(NotificationJob(order_id="ord-1"))

    assert deliver.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]
    record.assert_not_awaited()


@pytest.mark.asyncio
async def test_exhausted_job_becomes_dead_letter(configured):
    _, record = configured
    job = NotificationJob(order_id="ord-1")
    with patch("checkout.services.notifications._deliver", new=AsyncMock(return_value=False)):
        await notifications._handle_job(job)

    record.assert_awaited_once_with(job, PAYLOAD, "notification endpoint returned non-success", 3)


@pytest.mark.asyncio
async def test_disabled_without_target():
    with patch.object(notifications.settings, "notify_webhook_url", None), \
         patch("checkout.services.notifications._deliver", new=AsyncMock()) as deliver:
        await notifications._handle_job(NotificationJob(order_id="ord-1"))
    deliver.assert_not_awaited()

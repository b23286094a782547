"""
Append-only journal of inbound gateway notifications.

Every delivery is written in its own short transaction before any order or
stock mutation. Journal failures are logged and swallowed: the gateway must
always get its acknowledgment, otherwise it retries indefinitely.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.models import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class InboundEvent:
    source: str
    payload: Dict[str, Any]
    raw_body: Optional[str]
    ip: Optional[str]
    hash_valid: bool
    status: str
    headers: Dict[str, str] = field(default_factory=dict)
    txnid: Optional[str] = None
    failure_reason: Optional[str] = None
    provider: str = "payu"


class EventJournal:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, event: InboundEvent) -> Optional[int]:
        """Persist *event*; returns its id, or None if the write failed."""
        try:
            async with self._session_factory() as session:
                row = WebhookEvent(
                    provider=event.provider,
                    source=event.source,
                    txnid=event.txnid or None,
                    payload=event.payload,
                    headers=event.headers,
                    ip=event.ip,
                    raw_body=event.raw_body,
                    hash_valid=event.hash_valid,
                    status=event.status or "unknown",
                    failure_reason=event.failure_reason,
                )
                session.add(row)
                await session.commit()
                return row.id
        except Exception:
            logger.exception(
                "Failed to journal %s event txnid=%s ip=%s", event.source, event.txnid, event.ip
            )
            return None

    async def amend_failure(self, event_id: Optional[int], reason: str) -> bool:
        """
        Set the failure reason of a journaled event. Only the first amendment
        sticks; the rest of the row is immutable.
        """
        if event_id is None:
            logger.error("Cannot amend unjournaled event with reason: %s", reason)
            return False
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event_id, WebhookEvent.failure_reason.is_(None))
                    .values(failure_reason=reason)
                )
                await session.commit()
        except Exception:
            logger.exception("Failed to amend webhook event %s with reason: %s", event_id, reason)
            return False

        if result.rowcount != 1:
            logger.warning("Webhook event %s already carries a failure reason", event_id)
            return False
        logger.info("Webhook event %s flagged for review: %s", event_id, reason)
        return True

"""
Inbound PayU delivery handling (webhook, browser redirects, operator replay).

Order of operations for every delivery:
  1. origin allow-list (webhook only)
  2. signature verification (pure)
  3. journal write, before any mutation
  4. idempotent order update
Anything that cannot be reconciled is flagged on its journal row for manual
review and still acknowledged, so the gateway does not retry it forever.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.errors import NotFound, SignatureInvalid, ValidationError
from checkout.models import WebhookEvent
from checkout.schemas import GatewayNotification
from checkout.services import orders
from checkout.services.journal import EventJournal, InboundEvent
from checkout.services.signature import SignatureVerdict, SignatureVerifier

logger = logging.getLogger(__name__)

SUCCESS = "success"


class Source(str, enum.Enum):
    WEBHOOK = "webhook"
    REDIRECT_SUCCESS = "redirect_success"
    REDIRECT_FAILURE = "redirect_failure"
    REPLAY = "replay"


@dataclass
class InboundDelivery:
    source: Source
    form: Dict[str, str]
    raw_body: Optional[str] = None
    ip: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ReconciliationResult:
    http_status: int
    message: str
    outcome: str
    event_id: Optional[int] = None
    order_id: Optional[str] = None


def normalize_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    return ip.removeprefix("::ffff:")


class PaymentReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: SignatureVerifier,
        *,
        allowed_ips: Sequence[str] = (),
        unknown_order_policy: str = "create",
    ):
        self._session_factory = session_factory
        self._verifier = verifier
        self._journal = EventJournal(session_factory)
        self._allowed_ips = list(allowed_ips)
        self._unknown_order_policy = unknown_order_policy

    async def handle(self, delivery: InboundDelivery) -> ReconciliationResult:
        ip = normalize_ip(delivery.ip)
        notification = GatewayNotification.from_form(delivery.form)

        def _event(hash_valid: bool, failure_reason: Optional[str] = None) -> InboundEvent:
            return InboundEvent(
                source=delivery.source.value,
                payload=dict(delivery.form),
                raw_body=delivery.raw_body,
                ip=ip,
                headers=dict(delivery.headers),
                hash_valid=hash_valid,
                status=notification.status,
                txnid=notification.txnid,
                failure_reason=failure_reason,
            )

        # Redirects come from the customer's browser, so only the webhook is origin-checked
        if delivery.source == Source.WEBHOOK and self._allowed_ips and ip not in self._allowed_ips:
            logger.warning("Rejected PayU webhook from %s (not in allow-list)", ip)
            rejected = SignatureInvalid("Forbidden", status_code=403)
            event_id = await self._journal.record(_event(False, "IP not allowed"))
            return ReconciliationResult(rejected.status_code, rejected.message, "forbidden", event_id)

        verdict = self._verifier.verify(notification)
        event_id = await self._journal.record(_event(verdict == SignatureVerdict.VALID))

        if verdict != SignatureVerdict.VALID:
            logger.warning(
                "Invalid PayU hash source=%s txnid=%s ip=%s status=%s",
                delivery.source.value, notification.txnid, ip, notification.status,
            )
            rejected = SignatureInvalid()
            await self._journal.amend_failure(event_id, rejected.message)
            return ReconciliationResult(rejected.status_code, rejected.message, "invalid_signature", event_id)

        try:
            if notification.status != SUCCESS:
                return await self._failed_payment(delivery.source, notification, event_id)
            return await self._confirmed_payment(delivery.source, notification, event_id)
        except Exception as exc:
            logger.exception(
                "Reconciliation error source=%s txnid=%s", delivery.source.value, notification.txnid
            )
            if event_id is None:
                # Nothing durable was kept; let the gateway redeliver
                return ReconciliationResult(500, "Server error", "error")
            await self._journal.amend_failure(event_id, f"Exception: {exc}")
            return ReconciliationResult(200, "OK", "error", event_id)

    async def _failed_payment(
        self, source: Source, notification: GatewayNotification, event_id: Optional[int]
    ) -> ReconciliationResult:
        async with self._session_factory() as session:
            await orders.record_payment_failure(
                session,
                notification.txnid,
                notification.status,
                notification.payment_reference,
                details=notification.failure_details,
            )

        if source == Source.REDIRECT_FAILURE:
            return ReconciliationResult(200, "Payment failed", "payment_failed", event_id)

        await self._journal.amend_failure(event_id, "Payment status not success")
        return ReconciliationResult(400, "Payment not successful", "payment_not_successful", event_id)

    async def _confirmed_payment(
        self, source: Source, notification: GatewayNotification, event_id: Optional[int]
    ) -> ReconciliationResult:
        fallback_error: Optional[str] = None
        try:
            fallback = orders.parse_fallback(notification)
        except ValidationError as exc:
            fallback, fallback_error = None, exc.message

        async with self._session_factory() as session:
            result = await orders.apply_payment_confirmation(
                session,
                notification.txnid,
                notification.status,
                notification.payment_reference,
                amount=notification.amount,
                fallback=fallback,
                unknown_order_policy=self._unknown_order_policy,
            )

        if result.needs_review:
            reason = result.reason
            if result.outcome == orders.ConfirmationOutcome.UNKNOWN_ORDER and fallback_error:
                reason = fallback_error
            await self._journal.amend_failure(event_id, reason or "Needs manual review")

        message = "Payment successful" if source == Source.REDIRECT_SUCCESS else "OK"
        return ReconciliationResult(200, message, result.outcome.value, event_id, result.order_id)

    async def replay(self, event_id: int) -> ReconciliationResult:
        """Re-run reconciliation for a journaled event. The replay is journaled too."""
        async with self._session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None:
                raise NotFound(f"Webhook event {event_id} not found")
            delivery = InboundDelivery(
                source=Source.REPLAY,
                form={k: str(v) for k, v in (event.payload or {}).items()},
                raw_body=event.raw_body,
                ip=event.ip,
                headers=dict(event.headers or {}),
            )
        logger.info("Replaying webhook event %s txnid=%s", event_id, event.txnid)
        return await self.handle(delivery)

#!/usr/bin/env python3
"""
CLI: inspect and repair payment reconciliation state.

Usage:
    # List journaled gateway events that need manual review
    python -m cli.reconcile --review

    # Narrow the review list to one transaction
    python -m cli.reconcile --review --txnid TXN1700000000000123

    # Re-run reconciliation for a journaled event
    python -m cli.reconcile --replay 42

    # Show stock levels
    python -m cli.reconcile --stock
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from checkout.config import get_settings
from checkout.database import AsyncSessionLocal
from checkout.errors import NotFound
from checkout.models import Product, WebhookEvent
from checkout.services import notifications
from checkout.services.reconciliation import PaymentReconciler
from checkout.services.signature import GatewayCredentials, SignatureVerifier


def _reconciler() -> PaymentReconciler:
    settings = get_settings()
    credentials = GatewayCredentials(
        key=settings.payu_merchant_key,
        salt=settings.payu_merchant_salt,
        endpoint=settings.payu_endpoint,
    )
    return PaymentReconciler(
        AsyncSessionLocal,
        SignatureVerifier(credentials),
        unknown_order_policy=settings.unknown_order_policy,
    )


async def cmd_review(txnid: str | None, limit: int) -> None:
    async with AsyncSessionLocal() as session:
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.failure_reason.is_not(None))
            .order_by(WebhookEvent.id.desc())
            .limit(limit)
        )
        if txnid:
            stmt = stmt.where(WebhookEvent.txnid == txnid)
        rows = (await session.execute(stmt)).scalars().all()

    if not rows:
        print("No events need review.")
        return

    print(f"\n{'ID':>8} {'SOURCE':<18} {'TXNID':<28} {'STATUS':<10} {'RECEIVED':<26} REASON")
    print("-" * 120)
    for r in rows:
        print(
            f"{r.id:>8} {r.source:<18} {(r.txnid or '-'):<28} {r.status:<10} "
            f"{r.received_at.isoformat():<26} {r.failure_reason}"
        )


async def cmd_replay(event_id: int) -> None:
    # A replay that confirms an order queues its notification; deliver it before exiting
    worker = asyncio.create_task(notifications.worker(), name="notification-worker")
    try:
        result = await _reconciler().replay(event_id)
    except NotFound as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        # No deadline: the worker gives up on its own once retries are exhausted
        await notifications.drain(timeout=None)
        worker.cancel()

    print(f"→ Replayed event {event_id}")
    print(f"  Outcome:      {result.outcome}")
    print(f"  HTTP status:  {result.http_status} ({result.message})")
    print(f"  Replay event: {result.event_id}")
    if result.order_id:
        print(f"  Order:        {result.order_id}")


async def cmd_stock() -> None:
    async with AsyncSessionLocal() as session:
        rows = (await session.execute(select(Product).order_by(Product.name, Product.id))).scalars().all()

    if not rows:
        print("No products found.")
        return

    print(f"\n{'PRODUCT_ID':<38} {'NAME':<30} {'IN_STOCK':>10}")
    print("-" * 80)
    for r in rows:
        print(f"{r.id:<38} {r.name[:30]:<30} {r.count_in_stock:>10}")


def main() -> None:
    parser = argparse.ArgumentParser(description="PayU checkout reconciliation CLI")
    parser.add_argument("--review", action="store_true", help="List events needing manual review")
    parser.add_argument("--txnid", help="Filter --review by transaction id")
    parser.add_argument("--limit", type=int, default=50, help="Maximum rows for --review")
    parser.add_argument("--replay", type=int, metavar="EVENT_ID", help="Re-run reconciliation for an event")
    parser.add_argument("--stock", action="store_true", help="Print current stock levels")
    args = parser.parse_args()

    if args.replay is not None:
        asyncio.run(cmd_replay(args.replay))
    elif args.stock:
        asyncio.run(cmd_stock())
    elif args.review:
        asyncio.run(cmd_review(args.txnid, args.limit))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres needed).
"""
from __future__ import annotations

import os

# Settings are cached on first import; these must be in place before any checkout module loads
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYU_MERCHANT_KEY", "testkey")
os.environ.setdefault("PAYU_MERCHANT_SALT", "testsalt")
os.environ.setdefault("PAYU_ALLOWED_IPS", "")
os.environ.setdefault("NOTIFY_WEBHOOK_URL", "")

from typing import AsyncGenerator, Dict
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from checkout.config import get_settings
from checkout.database import get_db, get_session_factory
from checkout.main import app
from checkout.models import Base, OrderStatus, Product, User
from checkout.services.signature import GatewayCredentials, response_signature

# Use aiosqlite for tests (no Postgres needed)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

CREDENTIALS = GatewayCredentials(key="testkey", salt="testsalt")


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    # One shared connection so every session in a test sees the same in-memory DB
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def enqueued() -> MagicMock:
    """Capture notification jobs instead of queueing them."""
    with patch("checkout.services.notifications.enqueue") as mock:
        yield mock


@pytest_asyncio.fixture
async def catalog(db_session) -> Dict[str, Product]:
    """A small catalog: two fixed-price products and one sized product."""
    products = {
        "A": Product(id="prod-a", name="Alpha", price=100, count_in_stock=5),
        "B": Product(id="prod-b", name="Beta", price="49.50", count_in_stock=1),
        "S": Product(
            id="prod-s",
            name="Sized",
            price=[{"size": "M", "amount": 200}, {"size": "L", "amount": 250}],
            count_in_stock=10,
        ),
    }
    db_session.add_all(products.values())
    db_session.add(User(id="user-1", name="Asha", email="Asha@Example.com", phone="+91 98765-43210"))
    await db_session.commit()
    return products


def signed_notification(
    *,
    txnid: str,
    amount: str,
    status: str = "success",
    productinfo: str = "Order_1",
    firstname: str = "Asha",
    email: str = "asha@example.com",
    credentials: GatewayCredentials = CREDENTIALS,
    **extra: str,
) -> Dict[str, str]:
    """Form fields as PayU would post them, with a correct response hash."""
    form = {
        "key": credentials.key,
        "txnid": txnid,
        "amount": amount,
        "productinfo": productinfo,
        "firstname": firstname,
        "email": email,
        "status": status,
        "mihpayid": f"pay_{txnid}",
    }
    form["hash"] = response_signature(
        credentials,
        status=status,
        txnid=txnid,
        amount=amount,
        productinfo=productinfo,
        firstname=firstname,
        email=email,
    )
    form.update(extra)
    return form


def order_snapshot(order) -> dict:
    return {
        "id": order.id,
        "txnid": order.txnid,
        "is_paid": order.is_paid,
        "paid_at": order.paid_at,
        "payment_result": order.payment_result,
        "status": OrderStatus(order.status),
        "total_price": order.total_price,
    }


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app, with both DB dependencies on the test engine."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


@pytest.fixture
def override_settings():
    """Swap in a copy of the settings with some fields changed for one test."""

    def _apply(**changes):
        patched = get_settings().model_copy(update=changes)
        app.dependency_overrides[get_settings] = lambda: patched
        return patched

    return _apply

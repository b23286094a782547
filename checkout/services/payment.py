"""
PayU Hosted Checkout request construction.

The builder only produces the signed field set; posting it (server-rendered
redirect or client-side form) is left to the caller.
"""
from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import GatewayNotConfigured, ValidationError
from checkout.models import Order, OrderStatus
from checkout.services.catalog import get_user
from checkout.services.orders import get_order
from checkout.services.signature import (
    GatewayCredentials,
    normalize_email,
    normalize_first_name,
    request_signature,
)

logger = logging.getLogger(__name__)

_DESCRIPTOR_STRIP = re.compile(r"[^A-Za-z0-9\s_-]")
_NAME_STRIP = re.compile(r"[^A-Za-z0-9\s]")
_PHONE_STRIP = re.compile(r"[^0-9]")

DEFAULT_FIRST_NAME = "Customer"


def sanitize_descriptor(value: str) -> str:
    return _DESCRIPTOR_STRIP.sub("", value).strip()[:100]


def sanitize_first_name(value: str) -> str:
    return normalize_first_name(_NAME_STRIP.sub("", value))[:60]


def sanitize_phone(value: str) -> str:
    return _PHONE_STRIP.sub("", value)[:10]


def format_amount(amount: Decimal | str | float) -> str:
    """Fixed two-decimal representation PayU signs over, e.g. ``"1999.00"``."""
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidOperation(amount)
        value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    return str(value)


def new_gateway_txnid() -> str:
    return f"TXN{int(time.time() * 1000)}{secrets.randbelow(10_000):04d}"


@dataclass(frozen=True)
class CustomerIdentity:
    firstname: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class PaymentRequest:
    form_data: Dict[str, str]
    payment_url: str

    @property
    def txnid(self) -> str:
        return self.form_data["txnid"]


class PaymentInitiationBuilder:
    def __init__(
        self,
        credentials: GatewayCredentials,
        *,
        success_path: str = "/api/payu/success",
        failure_path: str = "/api/payu/failure",
        txnid_factory: Callable[[], str] = new_gateway_txnid,
    ):
        self._credentials = credentials
        self._success_path = success_path
        self._failure_path = failure_path
        self._txnid_factory = txnid_factory

    def build(
        self,
        *,
        order_id: str,
        amount: Decimal | str,
        customer: CustomerIdentity,
        return_base_url: str,
    ) -> PaymentRequest:
        if not self._credentials.configured:
            raise GatewayNotConfigured()

        formatted = format_amount(amount)
        if Decimal(formatted) <= 0:
            raise ValidationError("Invalid amount")

        txnid = self._txnid_factory()
        productinfo = sanitize_descriptor(f"Order_{order_id}")
        firstname = sanitize_first_name(customer.firstname) or DEFAULT_FIRST_NAME
        email = normalize_email(customer.email)
        base = return_base_url.strip().rstrip("/")

        form_data = {
            "key": self._credentials.key,
            "txnid": txnid,
            "amount": formatted,
            "productinfo": productinfo,
            "firstname": firstname,
            "email": email,
            "phone": sanitize_phone(customer.phone),
            "surl": f"{base}{self._success_path}",
            "furl": f"{base}{self._failure_path}",
            "service_provider": "payu_paisa",
            "lastname": "",
            "address1": "",
            "address2": "",
            "city": "",
            "state": "",
            "country": "",
            "zipcode": "",
            "udf1": "",
            "udf2": "",
            "udf3": "",
            "udf4": "",
            "udf5": "",
            "pg": "",
        }
        form_data["hash"] = request_signature(
            self._credentials,
            txnid=txnid,
            amount=formatted,
            productinfo=productinfo,
            firstname=firstname,
            email=email,
        )
        logger.debug("PayU request built txnid=%s amount=%s", txnid, formatted)
        return PaymentRequest(form_data=form_data, payment_url=self._credentials.endpoint)


async def resolve_customer(session: AsyncSession, order: Order) -> CustomerIdentity:
    """Shipping-address identity first, then the owning user's profile."""
    shipping = order.shipping_address or {}
    user = await get_user(session, order.user_id)

    firstname = shipping.get("firstname") or (user.name if user else "") or DEFAULT_FIRST_NAME
    email = shipping.get("email") or (user.email if user else "")
    phone = shipping.get("phone") or (user.phone if user else "") or ""
    if not email or not email.strip():
        raise ValidationError("Customer email is required to initiate payment")
    return CustomerIdentity(firstname=firstname, email=email, phone=phone)


async def initiate_payment(
    session: AsyncSession,
    builder: PaymentInitiationBuilder,
    *,
    return_base_url: str,
    order_id: Optional[str] = None,
    txnid: Optional[str] = None,
) -> PaymentRequest:
    """
    Build a signed PayU request for an unpaid pending order and move the
    order onto the freshly generated txnid.
    """
    order = await get_order(session, order_id=order_id, txnid=txnid)
    if order.is_paid or order.status != OrderStatus.PENDING.value:
        raise ValidationError(f"Order {order.id} is not awaiting payment")
    if not order.items:
        raise ValidationError(f"Order {order.id} has no products")

    customer = await resolve_customer(session, order)
    request = builder.build(
        order_id=order.id,
        amount=order.total_price,
        customer=customer,
        return_base_url=return_base_url,
    )

    order_id, previous_txnid = order.id, order.txnid
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.is_paid.is_(False))
        .values(txnid=request.txnid)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ValidationError(f"Order {order_id} is not awaiting payment")
    await session.commit()

    logger.info(
        "Payment initiated for order %s: txnid %s -> %s", order_id, previous_txnid, request.txnid
    )
    return request

"""
FastAPI dependency utilities: gateway components built from settings,
raw form capture for PayU callbacks, admin token check.
"""
from __future__ import annotations

import hmac
import logging
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.config import Settings, get_settings
from checkout.database import get_session_factory
from checkout.services.payment import PaymentInitiationBuilder
from checkout.services.reconciliation import PaymentReconciler
from checkout.services.signature import GatewayCredentials, SignatureVerifier

logger = logging.getLogger(__name__)

# Headers kept on journaled events; cookies and auth headers are never stored
_JOURNALED_HEADERS = ("content-type", "user-agent", "x-forwarded-for", "x-real-ip")


def get_credentials(settings: Settings = Depends(get_settings)) -> GatewayCredentials:
    return GatewayCredentials(
        key=settings.payu_merchant_key,
        salt=settings.payu_merchant_salt,
        endpoint=settings.payu_endpoint,
    )


def get_verifier(
    credentials: GatewayCredentials = Depends(get_credentials),
) -> SignatureVerifier:
    return SignatureVerifier(credentials)


def get_builder(
    credentials: GatewayCredentials = Depends(get_credentials),
    settings: Settings = Depends(get_settings),
) -> PaymentInitiationBuilder:
    return PaymentInitiationBuilder(
        credentials,
        success_path=settings.payu_success_path,
        failure_path=settings.payu_failure_path,
    )


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    verifier: SignatureVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_settings),
) -> PaymentReconciler:
    return PaymentReconciler(
        session_factory,
        verifier,
        allowed_ips=settings.allowed_ips,
        unknown_order_policy=settings.unknown_order_policy,
    )


class GatewayForm:
    """Parsed PayU form fields plus the untouched request body."""

    def __init__(self, fields: Dict[str, str], raw_body: Optional[str], ip: Optional[str], headers: Dict[str, str]):
        self.fields = fields
        self.raw_body = raw_body
        self.ip = ip
        self.headers = headers


async def read_gateway_form(request: Request) -> GatewayForm:
    """
    Capture the raw body before parsing so it can be journaled verbatim.
    A body that is not form-encoded is journaled with no parsed fields.
    """
    body = await request.body()
    raw = body.decode("utf-8", errors="replace") if body else None

    fields: Dict[str, str] = {}
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        fields = {k: v for k, v in form.items() if isinstance(v, str)}
    else:
        logger.warning("PayU callback with unexpected content-type %r", content_type)

    headers = {k: v for k, v in request.headers.items() if k.lower() in _JOURNALED_HEADERS}
    ip = request.client.host if request.client else None
    return GatewayForm(fields=fields, raw_body=raw, ip=ip, headers=headers)


def return_base_url(request: Request, settings: Settings = Depends(get_settings)) -> str:
    """Base for PayU return URLs: configured frontend, else this host."""
    if settings.frontend_base_url:
        return settings.frontend_base_url
    return str(request.base_url).rstrip("/")


async def current_user_id(x_user_id: str | None = Header(default=None)) -> Optional[str]:
    """User id asserted by the upstream authentication layer, if any."""
    return x_user_id or None


async def require_admin_token(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Bearer-token guard for operator endpoints; open when no token is configured."""
    if not settings.admin_api_token:
        return
    if authorization and authorization.startswith("Bearer "):
        token = authorization.removeprefix("Bearer ").strip()
        if hmac.compare_digest(token.encode(), settings.admin_api_token.encode()):
            return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing Bearer token",
    )

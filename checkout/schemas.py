"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from checkout.models import OrderStatus


# ── Gateway payloads ─────────────────────────────────────────────────────────

class GatewayNotification(BaseModel):
    """
    Fields PayU posts to the webhook and to the success/failure return URLs.
    Everything is optional here; the verifier decides what is acceptable.
    """
    key: str = ""
    txnid: str = ""
    amount: str = ""
    productinfo: str = ""
    firstname: str = ""
    email: str = ""
    status: str = ""
    hash: str = ""
    mihpayid: Optional[str] = None
    # Diagnostics PayU adds on failed or cancelled payments
    mode: Optional[str] = None
    error: Optional[str] = None
    unmappedstatus: Optional[str] = None
    # JSON strings some integrations append for fallback order creation
    products: Optional[str] = None
    shipping_address: Optional[str] = Field(default=None, alias="shippingAddress")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @classmethod
    def from_form(cls, form: Dict[str, Any]) -> "GatewayNotification":
        return cls.model_validate({k: str(v) for k, v in form.items()})

    @property
    def payment_reference(self) -> str:
        return self.mihpayid or self.txnid

    @property
    def failure_details(self) -> Dict[str, str]:
        return {
            name: value
            for name, value in (
                ("mode", self.mode),
                ("error", self.error),
                ("unmappedstatus", self.unmappedstatus),
            )
            if value
        }


# ── Orders ───────────────────────────────────────────────────────────────────

class LineItem(BaseModel):
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class ShippingAddress(BaseModel):
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, alias="postalCode")
    country: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CreatePendingOrderRequest(BaseModel):
    products: List[LineItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress = Field(
        default_factory=ShippingAddress, alias="shippingAddress"
    )

    model_config = ConfigDict(populate_by_name=True)


class OrderLineOut(BaseModel):
    product_id: str
    size: Optional[str]
    quantity: int
    unit_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: str
    user_id: Optional[str]
    txnid: str
    items: List[OrderLineOut]
    shipping_address: Dict[str, Any]
    payment_method: str
    total_price: Decimal
    is_paid: bool
    paid_at: Optional[datetime]
    payment_result: Optional[Dict[str, Any]]
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PendingOrderResponse(BaseModel):
    order: OrderOut
    txnid: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# ── Payment initiation ───────────────────────────────────────────────────────

class InitiatePaymentRequest(BaseModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    txnid: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _one_reference(self) -> "InitiatePaymentRequest":
        if not self.order_id and not self.txnid:
            raise ValueError("orderId or txnid is required")
        return self


class PaymentInitiationResponse(BaseModel):
    form_data: Dict[str, str] = Field(..., serialization_alias="formData")
    payment_url: str = Field(..., serialization_alias="paymentUrl")


# ── Admin / query responses ───────────────────────────────────────────────────

class WebhookEventRow(BaseModel):
    id: int
    provider: str
    source: str
    txnid: Optional[str]
    ip: Optional[str]
    hash_valid: bool
    status: str
    failure_reason: Optional[str]
    payload: Dict[str, Any]
    received_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockRow(BaseModel):
    product_id: str
    name: str
    count_in_stock: int


class ReplayResult(BaseModel):
    event_id: int
    replay_event_id: Optional[int]
    outcome: str
    http_status: int


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"

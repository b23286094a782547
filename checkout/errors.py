"""
Error taxonomy for the checkout API.

Each error carries the HTTP status and machine-readable code the API
exception handler renders. Anything that is not a CheckoutError is treated
as unexpected and reported as a generic 500.
"""
from __future__ import annotations


class CheckoutError(Exception):
    """Base class for all errors surfaced to interactive API callers."""

    def __init__(self, message: str, code: str = "UNEXPECTED", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(CheckoutError):
    """Malformed or missing request fields; user-correctable."""

    def __init__(self, message: str):
        super().__init__(message, code="VALIDATION_ERROR", status_code=400)


class SignatureInvalid(CheckoutError):
    """Integrity failure on a gateway payload (bad hash or disallowed origin)."""

    def __init__(self, message: str = "Invalid hash", status_code: int = 400):
        super().__init__(message, code="SIGNATURE_INVALID", status_code=status_code)


class InsufficientStock(CheckoutError):
    """A reservation could not be satisfied for *product_id*."""

    def __init__(self, product_id: str, requested: int | None = None):
        self.product_id = product_id
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}",
            code="INSUFFICIENT_STOCK",
            status_code=409,
        )

    def to_dict(self) -> dict:
        return {**super().to_dict(), "product_id": self.product_id}


class NotFound(CheckoutError):
    def __init__(self, message: str):
        super().__init__(message, code="NOT_FOUND", status_code=404)


class InvalidTransition(CheckoutError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move order from {current!r} to {target!r}",
            code="INVALID_TRANSITION",
            status_code=409,
        )


class GatewayNotConfigured(CheckoutError):
    def __init__(self, message: str = "PayU merchant key or salt not configured"):
        super().__init__(message, code="GATEWAY_NOT_CONFIGURED", status_code=500)

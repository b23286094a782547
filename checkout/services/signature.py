"""
PayU hash construction and verification.

Outbound (payment request):
    sha512(key|txnid|amount|productinfo|firstname|email|udf1..udf5|||||salt)
Inbound (response / webhook):
    sha512(salt|status|||||udf5..udf1|email|firstname|productinfo|amount|txnid|key)

The two sequences are mirror images; both sides normalise email and first
name the same way or a correctly signed response would fail to verify.
"""
from __future__ import annotations

import enum
import hashlib
import hmac
import logging
from dataclasses import dataclass

from checkout.schemas import GatewayNotification

logger = logging.getLogger(__name__)

# udf1..udf5 plus five reserved fields, all sent empty
PLACEHOLDER_FIELDS = 10


@dataclass(frozen=True)
class GatewayCredentials:
    """Merchant identity for one PayU account, built once from settings."""
    key: str
    salt: str
    endpoint: str = "https://test.payu.in/_payment"

    @property
    def configured(self) -> bool:
        return bool(self.key and self.salt)


class SignatureVerdict(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_first_name(firstname: str) -> str:
    return firstname.strip()


def _sha512(parts: list[str]) -> str:
    return hashlib.sha512("|".join(parts).encode("utf-8")).hexdigest()


def request_signature(
    credentials: GatewayCredentials,
    *,
    txnid: str,
    amount: str,
    productinfo: str,
    firstname: str,
    email: str,
) -> str:
    """Hash for an outbound payment request."""
    return _sha512(
        [
            credentials.key,
            txnid,
            amount,
            productinfo,
            normalize_first_name(firstname),
            normalize_email(email),
            *([""] * PLACEHOLDER_FIELDS),
            credentials.salt,
        ]
    )


def response_signature(
    credentials: GatewayCredentials,
    *,
    status: str,
    txnid: str,
    amount: str,
    productinfo: str,
    firstname: str,
    email: str,
) -> str:
    """Hash PayU is expected to attach to a response for these fields."""
    return _sha512(
        [
            credentials.salt,
            status,
            *([""] * PLACEHOLDER_FIELDS),
            normalize_email(email),
            normalize_first_name(firstname),
            productinfo,
            amount,
            txnid,
            credentials.key,
        ]
    )


class SignatureVerifier:
    """Pure check of a gateway notification against the merchant credentials."""

    REQUIRED = ("key", "txnid", "amount", "productinfo", "firstname", "email", "status", "hash")

    def __init__(self, credentials: GatewayCredentials):
        self._credentials = credentials

    def verify(self, notification: GatewayNotification) -> SignatureVerdict:
        """Return VALID or INVALID. Never raises; missing fields are INVALID."""
        if not self._credentials.configured:
            logger.error("PayU credentials not configured – rejecting notification")
            return SignatureVerdict.INVALID

        missing = [f for f in self.REQUIRED if not getattr(notification, f, None)]
        if missing:
            logger.warning(
                "Notification txnid=%s missing fields: %s",
                notification.txnid, ", ".join(missing),
            )
            return SignatureVerdict.INVALID

        if not hmac.compare_digest(notification.key.encode(), self._credentials.key.encode()):
            logger.warning("Notification txnid=%s carries a foreign merchant key", notification.txnid)
            return SignatureVerdict.INVALID

        expected = response_signature(
            self._credentials,
            status=notification.status,
            txnid=notification.txnid,
            amount=notification.amount,
            productinfo=notification.productinfo,
            firstname=notification.firstname,
            email=notification.email,
        )
        if hmac.compare_digest(expected.encode(), notification.hash.encode()):
            return SignatureVerdict.VALID

        logger.warning(
            "PayU hash mismatch txnid=%s status=%s", notification.txnid, notification.status
        )
        return SignatureVerdict.INVALID

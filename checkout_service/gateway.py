"""Payment gateway port and a configurable fake adapter.

The checkout core only needs three things from a gateway: the captured state
of a payment, verification of the checkout callback signature, and
verification of webhook signatures. ``clients.RazorpayGateway`` implements the
port over REST; ``FakeGateway`` serves development and tests.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

CAPTURED_STATUSES = frozenset({"captured", "authorized"})


@dataclass(frozen=True)
class GatewayTransaction:
    """A payment as reported by the gateway."""

    payment_ref: str
    status: str
    captured_amount_minor: int
    method: Optional[str] = None
    currency: str = "INR"
    email: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.status in CAPTURED_STATUSES


def sign(message: bytes, secret: str) -> str:
    """Hex HMAC-SHA256, the signature scheme used for callbacks and webhooks."""
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def checkout_signature(order_ref: str, payment_ref: str, secret: str) -> str:
    return sign(f"{order_ref}|{payment_ref}".encode(), secret)


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def fetch_transaction(self, payment_ref: str) -> GatewayTransaction:
        """Fetch the current state of a payment."""
        ...

    @abstractmethod
    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        """Verify the signature the gateway handed the client after checkout."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify that a webhook payload is authentically from the gateway."""
        ...


class FakeGateway(PaymentGateway):
    """In-memory gateway. Payments are registered with ``add_transaction``."""

    def __init__(self, secret: str = "fake_secret", webhook_secret: str = "fake_webhook_secret") -> None:
        self.secret = secret
        self.webhook_secret = webhook_secret
        self.transactions: dict[str, GatewayTransaction] = {}
        self.calls: list[dict] = []
        self.fail_with: Optional[Exception] = None

    def add_transaction(self, payment_ref: str, amount_minor: int, status: str = "captured",
                        method: str = "card") -> GatewayTransaction:
        txn = GatewayTransaction(
            payment_ref=payment_ref,
            status=status,
            captured_amount_minor=amount_minor,
            method=method,
        )
        self.transactions[payment_ref] = txn
        return txn

    def fetch_transaction(self, payment_ref: str) -> GatewayTransaction:
        self.calls.append({"method": "fetch_transaction", "payment_ref": payment_ref})
        if self.fail_with is not None:
            raise self.fail_with
        txn = self.transactions.get(payment_ref)
        if txn is None:
            return GatewayTransaction(payment_ref=payment_ref, status="not_found", captured_amount_minor=0)
        return txn

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        expected = checkout_signature(order_ref, payment_ref, self.secret)
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return hmac.compare_digest(sign(payload, self.webhook_secret), signature)

"""
errors.py — Checkout Error Taxonomy

Every rejection of the commit path is one of these exceptions. They are raised
synchronously and surfaced to the HTTP caller verbatim (see main.py for the
status code mapping). Post-commit side-effect failures never appear here.
"""

from enum import Enum


class CheckoutError(Exception):
    """Base class for all checkout rejections."""

    code = "checkout_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ProductUnavailable(CheckoutError):
    code = "product_unavailable"


class CouponInvalidReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    USAGE_EXHAUSTED = "usage_exhausted"
    BELOW_MINIMUM = "below_minimum"
    FIRST_TIME_ONLY = "first_time_only"
    USER_LIMIT_REACHED = "user_limit_reached"


class CouponInvalid(CheckoutError):
    code = "coupon_invalid"

    def __init__(self, reason: CouponInvalidReason, message: str = ""):
        super().__init__(message or f"Coupon rejected: {reason.value}")
        self.reason = reason

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["reason"] = self.reason.value
        return body


class InsufficientPoints(CheckoutError):
    code = "insufficient_points"


class RedemptionCapExceeded(CheckoutError):
    code = "redemption_cap_exceeded"


class PaymentNotCaptured(CheckoutError):
    code = "payment_not_captured"


class AmountMismatch(CheckoutError):
    code = "amount_mismatch"


class DuplicateTransaction(CheckoutError):
    code = "duplicate_transaction"


class InvalidSignature(CheckoutError):
    code = "invalid_signature"


class OrderNotFound(CheckoutError):
    code = "order_not_found"


class InvalidStatusTransition(CheckoutError):
    code = "invalid_status_transition"

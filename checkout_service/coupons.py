"""
coupons.py — Coupon Validator

``check_coupon`` is the only coupon eligibility predicate in the service. The
cart preview and the order commit both reach it through ``CouponValidator``,
so the discount a shopper is quoted is the discount applied at commit.

Checks, in order:
    1. existence and active flag             → not_found
    2. validity window                        → expired
    3. global usage-limit headroom            → usage_exhausted
    4. minimum purchase on the subtotal       → below_minimum
    5. first-time customer (no prior orders)  → first_time_only
    6. per-user usage cap                     → user_limit_reached

"Prior orders" are counted by ``OrderStore.count_prior_orders`` which excludes
cancelled orders; checks 5 and 6 are skipped when the shopper is unknown
(anonymous cart preview).

The usage-limit check reads an advisory counter. Simultaneous redemptions of
a nearly exhausted coupon can overshoot ``usage_limit`` by the number of
checkouts in flight; no reservation is taken.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .db import as_naive_utc
from .errors import CouponInvalid, CouponInvalidReason
from .models import Coupon, CustomerInfo
from .stores import CouponStore, OrderStore, normalize_code

log = logging.getLogger(__name__)


def check_coupon(
    coupon: Optional[Coupon],
    subtotal: Decimal,
    now: datetime,
    prior_orders: Optional[Callable[[], int]] = None,
    prior_uses: Optional[Callable[[], int]] = None,
) -> Coupon:
    """
    Side-effect-free coupon eligibility check.

    Args:
        coupon (Coupon): The stored coupon, or None if the code is unknown.
        subtotal (Decimal): Server-computed product subtotal.
        now (datetime): Evaluation instant (naive or aware UTC).
        prior_orders: Returns the shopper's non-cancelled order count. None for
            an anonymous shopper.
        prior_uses: Returns the shopper's non-cancelled orders carrying this
            code. None for an anonymous shopper.

    Returns:
        Coupon: The coupon, when every check passes.

    Raises:
        CouponInvalid: With the reason of the first failing check.
    """
    if coupon is None or not coupon.is_active:
        raise CouponInvalid(CouponInvalidReason.NOT_FOUND, "Invalid coupon code.")

    now = as_naive_utc(now)
    if not as_naive_utc(coupon.valid_from) <= now <= as_naive_utc(coupon.valid_until):
        raise CouponInvalid(CouponInvalidReason.EXPIRED, f"Coupon {coupon.code} is not valid at this time.")

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise CouponInvalid(CouponInvalidReason.USAGE_EXHAUSTED, f"Coupon {coupon.code} has reached its usage limit.")

    if subtotal < coupon.minimum_purchase:
        raise CouponInvalid(
            CouponInvalidReason.BELOW_MINIMUM,
            f"Minimum purchase of ₹{coupon.minimum_purchase} required for {coupon.code}.",
        )

    if coupon.first_time_only and prior_orders is not None and prior_orders() > 0:
        raise CouponInvalid(
            CouponInvalidReason.FIRST_TIME_ONLY,
            f"Coupon {coupon.code} is only valid for first-time customers.",
        )

    if coupon.user_limit is not None and prior_uses is not None and prior_uses() >= coupon.user_limit:
        raise CouponInvalid(
            CouponInvalidReason.USER_LIMIT_REACHED,
            f"Coupon {coupon.code} has already been used the maximum number of times.",
        )

    return coupon


class CouponValidator:
    """Binds ``check_coupon`` to the coupon and order stores."""

    def __init__(self, coupons: CouponStore, orders: OrderStore):
        self.coupons = coupons
        self.orders = orders

    def validate(
        self,
        code: str,
        subtotal: Decimal,
        customer: Optional[CustomerInfo],
        now: datetime,
    ) -> Coupon:
        code = normalize_code(code)
        coupon = self.coupons.get(code)
        prior_orders = prior_uses = None
        if customer is not None:
            prior_orders = lambda: self.orders.count_prior_orders(customer)  # noqa: E731
            prior_uses = lambda: self.orders.count_prior_orders(customer, coupon_code=code)  # noqa: E731
        try:
            return check_coupon(coupon, subtotal, now, prior_orders, prior_uses)
        except CouponInvalid as e:
            log.info(f"Coupon {code} rejected: {e.reason.value}.")
            raise

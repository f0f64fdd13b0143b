"""
discounts.py — Discount Stack

Pure computation of a ``DiscountBreakdown``. Discounts are applied by an
ordered pipeline of named stages, each working on the base left by the
previous one:

    quantity        → % of subtotal by item-count tier
    coupon          → % of base₁ (= subtotal − quantity), or fixed, capped at base₁
    reward          → points × point value, after cap and balance checks
    payment_channel → % of (base₁ − coupon) for online channels only

Shipping is added to the subtotal (flat fee below the free-shipping
threshold, zero at or above it) and is never discounted. The final amount is
floored at zero.

Rounding follows the storefront checkout: quantity and online discounts are
rounded half-up to whole rupees, percentage coupons are floored to whole
rupees, reward discounts are exact (points × ₹0.5 may leave paise).
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Tuple

from .config import QuantityTier, StorefrontSettings
from .errors import InsufficientPoints, RedemptionCapExceeded
from .models import Coupon, DiscountBreakdown, DiscountType, PaymentChannel

ZERO = Decimal("0")
HUNDRED = Decimal("100")
RUPEE = Decimal("1")


def round_rupee(value: Decimal) -> Decimal:
    return value.quantize(RUPEE, rounding=ROUND_HALF_UP)


def floor_rupee(value: Decimal) -> Decimal:
    return value.quantize(RUPEE, rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class DiscountInputs:
    """
    Everything the stack depends on. Two equal ``DiscountInputs`` always produce
    equal breakdowns.

    ``reward_balance`` is the redeemer's ledger balance as read for this
    computation; the ledger write re-checks it atomically.
    """
    subtotal: Decimal
    item_count: int
    channel: PaymentChannel
    settings: StorefrontSettings
    coupon: Optional[Coupon] = None
    reward_points: int = 0
    reward_balance: int = 0


@dataclass
class _Running:
    inputs: DiscountInputs
    shipping_cost: Decimal = ZERO
    quantity_discount: Decimal = ZERO
    quantity_tier: Optional[QuantityTier] = None
    coupon_discount: Decimal = ZERO
    reward_discount: Decimal = ZERO
    online_payment_discount: Decimal = ZERO

    @property
    def base_after_quantity(self) -> Decimal:
        return self.inputs.subtotal - self.quantity_discount


def select_quantity_tier(item_count: int, settings: StorefrontSettings) -> Optional[QuantityTier]:
    """Highest qualifying tier; among tiers with the same threshold the largest discount."""
    if not settings.quantity_discounts_enabled:
        return None
    qualifying = [t for t in settings.quantity_tiers if item_count >= t.min_quantity]
    if not qualifying:
        return None
    return max(qualifying, key=lambda t: (t.min_quantity, t.discount))


def shipping_cost_for(subtotal: Decimal, settings: StorefrontSettings) -> Decimal:
    if subtotal >= settings.free_shipping_threshold:
        return ZERO
    return settings.shipping_fee


def apply_quantity_discount(state: _Running):
    tier = select_quantity_tier(state.inputs.item_count, state.inputs.settings)
    if tier is None:
        return
    state.quantity_tier = tier
    state.quantity_discount = round_rupee(state.inputs.subtotal * tier.discount / HUNDRED)


def apply_coupon_discount(state: _Running):
    coupon = state.inputs.coupon
    if coupon is None:
        return
    base = state.base_after_quantity
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = floor_rupee(base * coupon.discount_value / HUNDRED)
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    else:
        discount = coupon.discount_value
    state.coupon_discount = max(ZERO, min(discount, base))


def apply_reward_discount(state: _Running):
    points = state.inputs.reward_points
    if points <= 0:
        return
    settings = state.inputs.settings
    cap = settings.reward_redemption_cap if settings.rewards_enabled else 0
    if points > cap:
        raise RedemptionCapExceeded(f"At most {cap} reward points can be redeemed per order.")
    if points > state.inputs.reward_balance:
        raise InsufficientPoints(
            f"Requested {points} points but only {state.inputs.reward_balance} are available."
        )
    state.reward_discount = points * settings.reward_point_value


def apply_online_payment_discount(state: _Running):
    if not state.inputs.channel.is_online:
        return
    percent = state.inputs.settings.online_payment_discount_percent
    base = state.base_after_quantity - state.coupon_discount
    state.online_payment_discount = max(ZERO, round_rupee(base * percent / HUNDRED))


# Order is load-bearing: each stage reads the base left by the ones before it.
STAGES: Tuple[Tuple[str, Callable[[_Running], None]], ...] = (
    ("quantity", apply_quantity_discount),
    ("coupon", apply_coupon_discount),
    ("reward", apply_reward_discount),
    ("payment_channel", apply_online_payment_discount),
)


def compute_breakdown(inputs: DiscountInputs) -> DiscountBreakdown:
    """
    Runs the discount pipeline.

    Raises:
        RedemptionCapExceeded: More points requested than the per-order cap
            (or any points while rewards are disabled).
        InsufficientPoints: More points requested than the balance.
    """
    state = _Running(inputs=inputs)
    state.shipping_cost = shipping_cost_for(inputs.subtotal, inputs.settings)
    for _, stage in STAGES:
        stage(state)

    savings = (
        state.quantity_discount
        + state.coupon_discount
        + state.reward_discount
        + state.online_payment_discount
    )
    final_amount = max(ZERO, inputs.subtotal + state.shipping_cost - savings)

    return DiscountBreakdown(
        subtotal=inputs.subtotal,
        item_count=inputs.item_count,
        shipping_cost=state.shipping_cost,
        quantity_discount=state.quantity_discount,
        quantity_tier=state.quantity_tier,
        coupon_discount=state.coupon_discount,
        coupon_code=inputs.coupon.code if inputs.coupon else None,
        reward_points_redeemed=inputs.reward_points,
        reward_discount=state.reward_discount,
        online_payment_discount=state.online_payment_discount,
        final_amount=final_amount,
        total_savings=savings,
    )

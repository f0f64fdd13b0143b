"""
models.py — Data Models for Checkout

This module defines the data structures that flow through checkout. It uses
Pydantic models so that every client-supplied payload is validated before it
reaches pricing, and so that server-derived artifacts (line items, discount
breakdowns, orders) are immutable once produced.

All models accept and emit camelCase on the wire (``productRef``,
``finalAmount``) while Python code uses snake_case attribute names.

Models:
    - CartItem / Customization / DesignSide: untrusted client cart input.
    - ResolvedLineItem: a cart line after server-side repricing.
    - DiscountBreakdown: result of the discount stack.
    - Coupon / CouponUsage: admin-defined discount codes and their redemptions.
    - RewardLedgerEntry: one append-only loyalty ledger movement.
    - PaymentAuditRecord / AuditEvent: forensic trail of a checkout attempt.
    - Order: the commit artifact.
    - QuoteRequest / CommitOrderRequest / StatusUpdateRequest: HTTP payloads.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import QuantityTier

ZERO = Decimal("0")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PaymentChannel(str, Enum):
    """Settlement channel chosen by the shopper. Everything except COD is online."""
    COD = "cod"
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    EMI = "emi"

    @property
    def is_online(self) -> bool:
        return self is not PaymentChannel.COD


class OrderStatus(str, Enum):
    RECEIVED = "Received"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class LedgerEntryType(str, Enum):
    EARNED = "earned"
    REDEEMED = "redeemed"
    ADMIN_ADJUSTMENT = "admin_adjustment"


# --- Cart input (untrusted) ---
class DesignSide(ApiModel):
    """
    One printed side of a custom item.

    Attributes:
        design_id (str): Catalog design reference; may be a client placeholder
            such as "custom-design" that does not resolve.
        design_image (str): Image URL for the print file.
        position (str): Placement on the garment.
        price (Decimal): Client-asserted price. Never trusted.
    """
    design_id: Optional[str] = None
    design_image: Optional[str] = None
    position: str = "center"
    price: Optional[Decimal] = None


class Customization(ApiModel):
    front_design: Optional[DesignSide] = None
    back_design: Optional[DesignSide] = None

    def sides(self) -> List[Tuple[str, DesignSide]]:
        """Returns the printed sides as (side name, design) pairs, front first."""
        sides = []
        if self.front_design is not None:
            sides.append(("front", self.front_design))
        if self.back_design is not None:
            sides.append(("back", self.back_design))
        return sides


class CartItem(ApiModel):
    """
    A single line of a client-submitted cart.

    Attributes:
        product_ref (str): Catalog product id; null for custom items.
        name (str): Display name as shown in the client. Re-derived server-side.
        quantity (int): Number of units. Must be at least one.
        size (str): Garment size.
        is_custom (bool): True for shopper-designed items.
        customization (Customization): Printed sides of a custom item.
        price (Decimal): Client-asserted unit price. Discarded by pricing.
    """
    product_ref: Optional[str] = None
    name: str = ""
    quantity: int = Field(..., ge=1)
    size: str = "M"
    is_custom: bool = False
    customization: Optional[Customization] = None
    price: Optional[Decimal] = None
    color: Optional[str] = None


class CustomerInfo(ApiModel):
    """Who is checking out. ``user_id`` is absent for guest checkout."""
    user_id: Optional[str] = None
    email: str
    name: str = ""
    phone: Optional[str] = None

    @property
    def identity(self) -> str:
        """Key used for every "prior orders of this customer" count."""
        if self.user_id:
            return self.user_id
        return f"guest:{self.email.strip().lower()}"


class ShippingAddress(ApiModel):
    name: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = "India"


# --- Server-derived artifacts ---
class ResolvedLineItem(FrozenModel):
    """
    A cart line after server-side repricing.

    ``unit_price`` and ``line_total`` come exclusively from the catalog (or the
    custom-item price policy); the client's claimed price never survives.
    """
    product_ref: Optional[str] = None
    name: str
    quantity: int
    size: str
    unit_price: Decimal
    line_total: Decimal
    is_custom: bool = False
    customization: Optional[Customization] = None
    color: Optional[str] = None


class DiscountBreakdown(FrozenModel):
    """
    Output of the discount stack.

    Invariant: ``final_amount = max(0, subtotal + shipping_cost - quantity_discount
    - coupon_discount - reward_discount - online_payment_discount)``.
    """
    subtotal: Decimal
    item_count: int
    shipping_cost: Decimal = ZERO
    quantity_discount: Decimal = ZERO
    quantity_tier: Optional[QuantityTier] = None
    coupon_discount: Decimal = ZERO
    coupon_code: Optional[str] = None
    reward_points_redeemed: int = 0
    reward_discount: Decimal = ZERO
    online_payment_discount: Decimal = ZERO
    final_amount: Decimal
    total_savings: Decimal = ZERO


class CouponUsage(ApiModel):
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    order_id: str
    used_at: datetime


class Coupon(ApiModel):
    """
    Admin-defined discount code. ``code`` is unique and stored upper-case.

    ``usage_limit`` caps redemptions across all shoppers, ``user_limit`` per
    shopper; either may be None for "unlimited". ``max_discount`` caps the
    rupee value of a percentage coupon.
    """
    code: str
    description: str = ""
    discount_type: DiscountType
    discount_value: Decimal = Field(..., ge=0)
    minimum_purchase: Decimal = ZERO
    max_discount: Optional[Decimal] = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_limit: Optional[int] = None
    first_time_only: bool = False
    is_active: bool = True
    used_by: List[CouponUsage] = Field(default_factory=list)


class RewardLedgerEntry(ApiModel):
    id: int
    user_id: str
    type: LedgerEntryType
    amount: int
    balance_after: int
    description: str = ""
    order_ref: Optional[str] = None
    created_at: datetime


class AuditEvent(ApiModel):
    event: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class PaymentAuditRecord(ApiModel):
    """
    Forensic trail of one checkout attempt.

    Created before the gateway is queried and updated in place; ``events`` is an
    append-only timeline. Amounts: rupees for the client/server figures, gateway
    minor units (paise) for the captured figure.
    """
    id: int
    transaction_ref: str
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    client_ip: Optional[str] = None
    payment_channel: Optional[PaymentChannel] = None
    client_claimed_amount: Optional[Decimal] = None
    server_computed_amount: Optional[Decimal] = None
    gateway_captured_amount: Optional[int] = None
    payment_status: str = "initiated"
    payment_method: Optional[str] = None
    amount_mismatch: bool = False
    signature_verified: bool = False
    webhook_received: bool = False
    risk_score: int = 0
    flagged: bool = False
    flag_reasons: List[str] = Field(default_factory=list)
    events: List[AuditEvent] = Field(default_factory=list)
    order_ref: Optional[str] = None
    created_at: datetime


class ShippingInfo(ApiModel):
    address: ShippingAddress = Field(default_factory=ShippingAddress)
    shipping_cost: Decimal = ZERO
    shipment_ref: Optional[str] = None
    courier: Optional[str] = None
    tracking_number: Optional[str] = None


class Order(ApiModel):
    """
    The commit artifact.

    Created once by the checkout coordinator; afterwards only ``status``,
    ``shipping`` annotations, ``invoice_ref`` and ``payment_status`` change.
    """
    id: str
    transaction_ref: str
    customer: CustomerInfo
    items: List[ResolvedLineItem]
    breakdown: DiscountBreakdown
    amount: Decimal
    payment_channel: PaymentChannel
    payment_status: PaymentStatus
    status: OrderStatus = OrderStatus.RECEIVED
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    invoice_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def coupon_code(self) -> Optional[str]:
        return self.breakdown.coupon_code

    @property
    def reward_points_redeemed(self) -> int:
        return self.breakdown.reward_points_redeemed


# --- HTTP payloads ---
class QuoteRequest(ApiModel):
    """Cart preview. Same inputs as a commit minus the payment reference."""
    items: List[CartItem] = Field(..., min_length=1)
    coupon_code: Optional[str] = None
    reward_points: int = Field(0, ge=0)
    payment_channel: PaymentChannel = PaymentChannel.CARD
    customer: Optional[CustomerInfo] = None


class CommitOrderRequest(ApiModel):
    """
    Order placement after the shopper paid (or chose COD).

    Attributes:
        transaction_ref (str): Gateway payment id; for COD a service-issued
            reference. Unique per order.
        client_amount (Decimal): What the client believes it charged. Recorded
            for the audit trail only, never used for pricing.
        gateway_order_ref (str): Gateway-side order id, needed with
            ``signature`` to verify the checkout callback.
    """
    items: List[CartItem] = Field(..., min_length=1)
    transaction_ref: str = Field(..., min_length=1)
    coupon_code: Optional[str] = None
    reward_points: int = Field(0, ge=0)
    payment_channel: PaymentChannel = PaymentChannel.CARD
    customer: CustomerInfo
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    client_amount: Optional[Decimal] = None
    gateway_order_ref: Optional[str] = None
    signature: Optional[str] = None


class StatusUpdateRequest(ApiModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    courier: Optional[str] = None

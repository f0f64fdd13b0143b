"""
config.py — Service Configuration

Two layers of configuration live here:

1. Infrastructure settings (URLs, credentials, queue names) read once from
   environment variables, like every service address in this codebase.
2. ``StorefrontSettings``: the business tunables of checkout (discount tiers,
   shipping fee, reward economics, reconciliation tolerance). Defaults are
   declared on the model; admins override individual keys through the
   ``settings`` table (see ``stores.SettingsStore``).
"""

import os
from decimal import Decimal
from typing import List

from pydantic import BaseModel, Field

# --- Infrastructure ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///storefront.db")

PAYMENT_GATEWAY_MODE = os.environ.get("PAYMENT_GATEWAY_MODE", "razorpay")  # "razorpay" | "fake"
PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://api.razorpay.com")
PAYMENT_GATEWAY_KEY_ID = os.environ.get("PAYMENT_GATEWAY_KEY_ID", "")
PAYMENT_GATEWAY_KEY_SECRET = os.environ.get("PAYMENT_GATEWAY_KEY_SECRET", "")
PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

EMAIL_API_URL = os.environ.get("EMAIL_API_URL", "")
EMAIL_API_KEY = os.environ.get("EMAIL_API_KEY", "")
EMAIL_SENDER = os.environ.get("EMAIL_SENDER", "orders@storefront.example")
SMS_API_URL = os.environ.get("SMS_API_URL", "")
SMS_API_KEY = os.environ.get("SMS_API_KEY", "")
TELEGRAM_API_URL = os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org")
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID", "")
INVOICE_SERVICE_URL = os.environ.get("INVOICE_SERVICE_URL", "")

RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "storefront")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "storefront")
SHIPMENT_QUEUE = os.environ.get("SHIPMENT_QUEUE", "fulfillment.shipments.new")
SHIPMENT_STATUS_QUEUE = os.environ.get("SHIPMENT_STATUS_QUEUE", "fulfillment.status.updates")
SHIPMENT_LISTENER_ENABLED = os.environ.get("SHIPMENT_LISTENER_ENABLED", "true").lower() == "true"

SIDE_EFFECT_WORKERS = int(os.environ.get("SIDE_EFFECT_WORKERS", "4"))

LOG_FILE = os.environ.get("LOG_FILE", "checkout_service.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


# --- Business tunables ---
class QuantityTier(BaseModel):
    """Percentage off the subtotal once the cart holds ``min_quantity`` items."""
    min_quantity: int = Field(..., ge=1)
    discount: Decimal = Field(..., ge=0, le=100)
    label: str = ""


class LoyaltyMultiplier(BaseModel):
    """Earned points are multiplied once the paid amount reaches ``min_amount``."""
    min_amount: Decimal = Field(..., ge=0)
    multiplier: int = Field(..., ge=1)
    label: str = ""


def _default_tiers() -> List[QuantityTier]:
    return [
        QuantityTier(min_quantity=3, discount=Decimal("10"), label="10% off on 3+ items"),
        QuantityTier(min_quantity=5, discount=Decimal("15"), label="15% off on 5+ items"),
        QuantityTier(min_quantity=8, discount=Decimal("20"), label="20% off on 8+ items"),
    ]


def _default_multipliers() -> List[LoyaltyMultiplier]:
    return [
        LoyaltyMultiplier(min_amount=Decimal("3000"), multiplier=2, label="2X points on orders ₹3000+"),
        LoyaltyMultiplier(min_amount=Decimal("5000"), multiplier=3, label="3X points on orders ₹5000+"),
    ]


class StorefrontSettings(BaseModel):
    """
    Business settings consumed by pricing, discounts, rewards and reconciliation.

    Every field name doubles as the key of an override row in the ``settings``
    table. Amounts are rupees unless the name says otherwise.
    """
    quantity_discounts_enabled: bool = True
    quantity_tiers: List[QuantityTier] = Field(default_factory=_default_tiers)

    free_shipping_threshold: Decimal = Decimal("999")
    shipping_fee: Decimal = Decimal("79")

    online_payment_discount_percent: Decimal = Decimal("5")

    rewards_enabled: bool = True
    reward_point_value: Decimal = Decimal("0.5")
    reward_redemption_cap: int = 50
    reward_earn_rate: Decimal = Decimal("0.01")
    loyalty_multipliers_enabled: bool = True
    loyalty_multipliers: List[LoyaltyMultiplier] = Field(default_factory=_default_multipliers)

    custom_base_price: Decimal = Decimal("499")
    design_fallback_price: Decimal = Decimal("150")

    reconciliation_tolerance_minor: int = 100
    risk_flag_threshold: int = 50
    currency: str = "INR"

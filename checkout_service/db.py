"""
db.py — Database Layer

SQLAlchemy tables backing the checkout core. The storefront's document
collections map onto tables with JSON columns for nested sub-documents
(line items, discount snapshot, audit timeline). Two storage guarantees
carry correctness under concurrency:

    • ``orders.transaction_ref`` is UNIQUE: duplicate submissions fail the insert.
    • ``coupon_redemptions`` is UNIQUE on (coupon_code, order_id): the coupon
      usage task can run twice without counting twice.

Counters (reward balance, coupon usage) are only changed by single conditional
UPDATE statements in stores.py / rewards.py.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

Money = Numeric(12, 2)


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class DesignRow(Base):
    __tablename__ = "designs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CouponRow(Base):
    __tablename__ = "coupons"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    minimum_purchase: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    max_discount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    user_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    first_time_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CouponRedemptionRow(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (UniqueConstraint("coupon_code", "order_id", name="uq_coupon_redemption_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coupon_code: Mapped[str] = mapped_column(ForeignKey("coupons.code"), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    used_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    # Cached projection of the reward ledger.
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class RewardLedgerRow(Base):
    __tablename__ = "reward_ledger"
    # At most one earned and one redeemed entry per order. Unlinked rows (NULL
    # order_ref) are never equal, so admin adjustments are unaffected.
    __table_args__ = (UniqueConstraint("user_id", "order_ref", "type", name="uq_reward_ledger_order_entry"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PaymentAuditRow(Base):
    __tablename__ = "payment_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    payment_channel: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    client_claimed_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    server_computed_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    gateway_captured_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="initiated")
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount_mismatch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)


class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    customer_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer: Mapped[dict] = mapped_column(JSON, nullable=False)
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    breakdown: Mapped[dict] = mapped_column(JSON, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    reward_points_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_channel: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    shipping: Mapped[dict] = mapped_column(JSON, nullable=False)
    invoice_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[object] = mapped_column(JSON, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


def create_database(url: str) -> tuple[sessionmaker, Engine]:
    """
    Creates the schema (idempotent) and returns ``(session_factory, engine)``.

    Args:
        url (str): SQLAlchemy database URL, e.g. ``sqlite:///storefront.db`` or
            ``postgresql+psycopg2://...``.
    """
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, echo=False, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False), engine

"""
stores.py — Storage Adapters for Checkout

Thin, synchronous repositories over the SQLAlchemy tables in db.py. Each
store owns a session factory and opens one short transaction per call, so
they are safe to share between request threads and side-effect workers.

Stores:
    - SettingsStore: admin overrides layered over ``StorefrontSettings`` defaults
    - CatalogStore: product and design lookups for the pricing resolver
    - CouponStore: coupon reads, redemption tracking, usage counter
    - OrderStore: unique order insert, prior-order counts, lifecycle updates
    - AuditStore: payment audit records and fraud-velocity counts
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .config import StorefrontSettings
from .db import (
    CouponRedemptionRow,
    CouponRow,
    DesignRow,
    OrderRow,
    PaymentAuditRow,
    ProductRow,
    SettingRow,
    utcnow,
)
from .errors import DuplicateTransaction, OrderNotFound
from .models import (
    AuditEvent,
    Coupon,
    CouponUsage,
    CustomerInfo,
    DiscountBreakdown,
    Order,
    OrderStatus,
    PaymentAuditRecord,
    PaymentChannel,
    PaymentStatus,
    ResolvedLineItem,
    ShippingInfo,
)

log = logging.getLogger(__name__)


class SettingsStore:
    """Admin-editable checkout settings."""

    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def load(self) -> StorefrontSettings:
        """
        Returns the effective settings: model defaults overlaid with every
        stored row whose key names a ``StorefrontSettings`` field. Unknown keys
        are ignored with a warning.
        """
        with self._session() as session:
            rows = session.execute(select(SettingRow)).scalars().all()
            overrides = {}
            for row in rows:
                if row.key in StorefrontSettings.model_fields:
                    overrides[row.key] = row.value
                else:
                    log.warning(f"Ignoring unknown setting '{row.key}'.")
        return StorefrontSettings.model_validate(overrides)

    def put(self, key: str, value: Any, description: str = ""):
        """
        Upserts one setting. The value is validated against the field type before
        it is written.

        Raises:
            KeyError: If ``key`` is not a settings field.
            pydantic.ValidationError: If the value does not fit the field.
        """
        if key not in StorefrontSettings.model_fields:
            raise KeyError(key)
        validated = StorefrontSettings.model_validate({key: value})
        stored = validated.model_dump(mode="json")[key]
        with self._session.begin() as session:
            row = session.get(SettingRow, key)
            if row is None:
                session.add(SettingRow(key=key, value=stored, description=description, updated_at=utcnow()))
            else:
                row.value = stored
                row.description = description or row.description
                row.updated_at = utcnow()


class CatalogStore:
    """Read-only product and design catalog."""

    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def get_product(self, product_id: str) -> Optional[ProductRow]:
        with self._session() as session:
            return session.get(ProductRow, product_id)

    def get_design(self, design_id: str) -> Optional[DesignRow]:
        with self._session() as session:
            return session.get(DesignRow, design_id)

    def add_product(self, product_id: str, name: str, price: Decimal, is_deleted: bool = False):
        with self._session.begin() as session:
            session.add(ProductRow(id=product_id, name=name, price=price, is_deleted=is_deleted))

    def add_design(self, design_id: str, name: str, price: Decimal, is_active: bool = True):
        with self._session.begin() as session:
            session.add(DesignRow(id=design_id, name=name, price=price, is_active=is_active))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CouponStore:
    """Coupons and their redemption trail (``usedBy``)."""

    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def get(self, code: str) -> Optional[Coupon]:
        """Looks a coupon up case-insensitively. Inactive coupons are returned too."""
        code = normalize_code(code)
        with self._session() as session:
            row = session.get(CouponRow, code)
            if row is None:
                return None
            usages = session.execute(
                select(CouponRedemptionRow)
                .where(CouponRedemptionRow.coupon_code == code)
                .order_by(CouponRedemptionRow.used_at)
            ).scalars().all()
            return _coupon_from_row(row, usages)

    def save(self, coupon: Coupon):
        """Creates or replaces a coupon definition (admin edit)."""
        code = normalize_code(coupon.code)
        with self._session.begin() as session:
            row = session.get(CouponRow, code)
            if row is None:
                row = CouponRow(code=code, usage_count=coupon.usage_count)
                session.add(row)
            row.description = coupon.description
            row.discount_type = coupon.discount_type.value
            row.discount_value = coupon.discount_value
            row.minimum_purchase = coupon.minimum_purchase
            row.max_discount = coupon.max_discount
            row.valid_from = coupon.valid_from
            row.valid_until = coupon.valid_until
            row.usage_limit = coupon.usage_limit
            row.user_limit = coupon.user_limit
            row.first_time_only = coupon.first_time_only
            row.is_active = coupon.is_active

    def record_redemption(
        self,
        code: str,
        order_id: str,
        user_id: Optional[str],
        customer_email: Optional[str],
    ) -> bool:
        """
        Appends a ``usedBy`` entry for an order and bumps the usage counter.

        The redemption row is unique per (coupon, order), so a repeated call for
        the same order is a no-op. The counter increment is a single
        ``usage_count = usage_count + 1`` statement in the same transaction.

        Returns:
            bool: True if this call recorded the redemption, False if it was
            already recorded.
        """
        code = normalize_code(code)
        try:
            with self._session.begin() as session:
                session.add(CouponRedemptionRow(
                    coupon_code=code,
                    order_id=order_id,
                    user_id=user_id,
                    customer_email=customer_email,
                    used_at=utcnow(),
                ))
                session.flush()
                session.execute(
                    update(CouponRow)
                    .where(CouponRow.code == code)
                    .values(usage_count=CouponRow.usage_count + 1)
                )
        except IntegrityError:
            log.info(f"[Order: {order_id}] Coupon {code} redemption already recorded.")
            return False
        return True


def _coupon_from_row(row: CouponRow, usages) -> Coupon:
    return Coupon(
        code=row.code,
        description=row.description,
        discount_type=row.discount_type,
        discount_value=row.discount_value,
        minimum_purchase=row.minimum_purchase,
        max_discount=row.max_discount,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        usage_limit=row.usage_limit,
        usage_count=row.usage_count,
        user_limit=row.user_limit,
        first_time_only=row.first_time_only,
        is_active=row.is_active,
        used_by=[
            CouponUsage(
                user_id=u.user_id,
                customer_email=u.customer_email,
                order_id=u.order_id,
                used_at=u.used_at,
            )
            for u in usages
        ],
    )


# Statuses that never count as a "prior order" of a customer.
EXCLUDED_FROM_HISTORY = (OrderStatus.CANCELLED.value,)


class OrderStore:
    """Orders keyed by id, unique by transaction reference."""

    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def insert(self, order: Order):
        """
        Persists a new order.

        Raises:
            DuplicateTransaction: If an order with the same ``transaction_ref``
                already exists (unique index violation).
        """
        row = OrderRow(
            id=order.id,
            transaction_ref=order.transaction_ref,
            customer_key=order.customer.identity,
            user_id=order.customer.user_id,
            customer=order.customer.model_dump(mode="json"),
            items=[item.model_dump(mode="json") for item in order.items],
            breakdown=order.breakdown.model_dump(mode="json"),
            amount=order.amount,
            coupon_code=order.coupon_code,
            reward_points_redeemed=order.reward_points_redeemed,
            payment_channel=order.payment_channel.value,
            payment_status=order.payment_status.value,
            status=order.status.value,
            shipping=order.shipping.model_dump(mode="json"),
            invoice_ref=order.invoice_ref,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        try:
            with self._session.begin() as session:
                session.add(row)
        except IntegrityError as e:
            raise DuplicateTransaction(
                f"An order for transaction {order.transaction_ref} already exists."
            ) from e

    def get(self, order_id: str) -> Order:
        with self._session() as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                raise OrderNotFound(f"Order {order_id} not found.")
            return _order_from_row(row)

    def get_by_transaction_ref(self, transaction_ref: str) -> Optional[Order]:
        with self._session() as session:
            row = session.execute(
                select(OrderRow).where(OrderRow.transaction_ref == transaction_ref)
            ).scalar_one_or_none()
            return _order_from_row(row) if row else None

    def count(self) -> int:
        with self._session() as session:
            return session.execute(select(func.count()).select_from(OrderRow)).scalar_one()

    def count_prior_orders(self, customer: CustomerInfo, coupon_code: Optional[str] = None) -> int:
        """
        Counts the customer's orders that are not cancelled, optionally only
        those that carried ``coupon_code``. Both the first-time check and the
        per-user coupon cap go through here so they share one exclusion set.
        """
        query = (
            select(func.count())
            .select_from(OrderRow)
            .where(OrderRow.customer_key == customer.identity)
            .where(OrderRow.status.not_in(EXCLUDED_FROM_HISTORY))
        )
        if coupon_code is not None:
            query = query.where(OrderRow.coupon_code == normalize_code(coupon_code))
        with self._session() as session:
            return session.execute(query).scalar_one()

    def update_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        """
        Compare-and-set on the status column.

        Returns:
            bool: False if the order was no longer in ``expected`` (concurrent update).
        """
        with self._session.begin() as session:
            result = session.execute(
                update(OrderRow)
                .where(OrderRow.id == order_id, OrderRow.status == expected.value)
                .values(status=new.value, updated_at=utcnow())
            )
            return result.rowcount == 1

    def set_payment_status(self, order_id: str, payment_status: PaymentStatus):
        with self._session.begin() as session:
            session.execute(
                update(OrderRow)
                .where(OrderRow.id == order_id)
                .values(payment_status=payment_status.value, updated_at=utcnow())
            )

    def annotate_shipping(self, order_id: str, **fields):
        """Merges shipment fields (shipment_ref, courier, tracking_number) into the order."""
        with self._session.begin() as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                raise OrderNotFound(f"Order {order_id} not found.")
            shipping = ShippingInfo.model_validate(row.shipping).model_copy(update=fields)
            row.shipping = shipping.model_dump(mode="json")
            row.updated_at = utcnow()

    def annotate_invoice(self, order_id: str, invoice_ref: str):
        with self._session.begin() as session:
            session.execute(
                update(OrderRow)
                .where(OrderRow.id == order_id)
                .values(invoice_ref=invoice_ref, updated_at=utcnow())
            )


def _order_from_row(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        transaction_ref=row.transaction_ref,
        customer=CustomerInfo.model_validate(row.customer),
        items=[ResolvedLineItem.model_validate(item) for item in row.items],
        breakdown=DiscountBreakdown.model_validate(row.breakdown),
        amount=row.amount,
        payment_channel=PaymentChannel(row.payment_channel),
        payment_status=PaymentStatus(row.payment_status),
        status=OrderStatus(row.status),
        shipping=ShippingInfo.model_validate(row.shipping),
        invoice_ref=row.invoice_ref,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


FAILED_PAYMENT_STATUSES = ("failed", "cancelled")


class AuditStore:
    """Payment audit records. Never deleted; events are append-only."""

    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def create(self, transaction_ref: str, **fields) -> int:
        now = fields.pop("created_at", None) or utcnow()
        row = PaymentAuditRow(
            transaction_ref=transaction_ref,
            created_at=now,
            flag_reasons=[],
            events=[_event("audit_created", now, {"transactionRef": transaction_ref})],
            **fields,
        )
        with self._session.begin() as session:
            session.add(row)
            session.flush()
            return row.id

    def get(self, audit_id: int) -> PaymentAuditRecord:
        with self._session() as session:
            row = session.get(PaymentAuditRow, audit_id)
            if row is None:
                raise KeyError(audit_id)
            return _audit_from_row(row)

    def find_by_transaction_ref(self, transaction_ref: str) -> List[PaymentAuditRecord]:
        with self._session() as session:
            rows = session.execute(
                select(PaymentAuditRow)
                .where(PaymentAuditRow.transaction_ref == transaction_ref)
                .order_by(PaymentAuditRow.id)
            ).scalars().all()
            return [_audit_from_row(r) for r in rows]

    def update(self, audit_id: int, event: Optional[str] = None, data: Optional[Dict[str, Any]] = None, **fields):
        """Sets columns and optionally appends one timeline event, in one transaction."""
        with self._session.begin() as session:
            row = session.get(PaymentAuditRow, audit_id, with_for_update=True)
            if row is None:
                raise KeyError(audit_id)
            for name, value in fields.items():
                setattr(row, name, value)
            if event is not None:
                row.events = [*row.events, _event(event, utcnow(), data or {})]

    def flag(self, audit_id: int, reason: str, bump: int = 0):
        """Flags a record for review, adding ``reason`` and raising the score by ``bump`` (max 100)."""
        with self._session.begin() as session:
            row = session.get(PaymentAuditRow, audit_id, with_for_update=True)
            if row is None:
                raise KeyError(audit_id)
            row.flagged = True
            row.flag_reasons = [*row.flag_reasons, reason]
            row.risk_score = min(row.risk_score + bump, 100)
            row.events = [*row.events, _event("flagged_for_review", utcnow(), {"reason": reason})]

    def count_attempts_by_ip(self, client_ip: str, since: datetime, exclude_id: Optional[int] = None) -> int:
        return self._count(PaymentAuditRow.client_ip == client_ip, since, exclude_id)

    def count_failed_by_ip(self, client_ip: str, since: datetime, exclude_id: Optional[int] = None) -> int:
        return self._count(
            (PaymentAuditRow.client_ip == client_ip)
            & PaymentAuditRow.payment_status.in_(FAILED_PAYMENT_STATUSES),
            since,
            exclude_id,
        )

    def count_attempts_by_email(self, email: str, since: datetime, exclude_id: Optional[int] = None) -> int:
        return self._count(func.lower(PaymentAuditRow.customer_email) == email.strip().lower(), since, exclude_id)

    def _count(self, criterion, since: datetime, exclude_id: Optional[int]) -> int:
        query = (
            select(func.count())
            .select_from(PaymentAuditRow)
            .where(criterion)
            .where(PaymentAuditRow.created_at >= since)
        )
        if exclude_id is not None:
            query = query.where(PaymentAuditRow.id != exclude_id)
        with self._session() as session:
            return session.execute(query).scalar_one()


def _event(name: str, timestamp: datetime, data: Dict[str, Any]) -> dict:
    return AuditEvent(event=name, timestamp=timestamp, data=data).model_dump(mode="json")


def _audit_from_row(row: PaymentAuditRow) -> PaymentAuditRecord:
    return PaymentAuditRecord(
        id=row.id,
        transaction_ref=row.transaction_ref,
        user_id=row.user_id,
        customer_email=row.customer_email,
        client_ip=row.client_ip,
        payment_channel=row.payment_channel,
        client_claimed_amount=row.client_claimed_amount,
        server_computed_amount=row.server_computed_amount,
        gateway_captured_amount=row.gateway_captured_amount,
        payment_status=row.payment_status,
        payment_method=row.payment_method,
        amount_mismatch=row.amount_mismatch,
        signature_verified=row.signature_verified,
        webhook_received=row.webhook_received,
        risk_score=row.risk_score,
        flagged=row.flagged,
        flag_reasons=list(row.flag_reasons),
        events=[AuditEvent.model_validate(e) for e in row.events],
        order_ref=row.order_ref,
        created_at=row.created_at,
    )

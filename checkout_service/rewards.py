"""
rewards.py — Reward Points Ledger

The ledger (``reward_ledger``) is the source of truth; ``customers.reward_points``
is a cached projection kept in step by writing both in one transaction.

Concurrency: redemption does not trust any balance read earlier in the
request. It issues a single conditional decrement

    UPDATE customers SET reward_points = reward_points - :p
    WHERE id = :user AND reward_points >= :p

and treats "no row updated" as ``InsufficientPoints``. Crediting and
redemption are idempotent per (order, entry type); the unique constraint on
``reward_ledger`` settles concurrent duplicates.
"""

import logging
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .config import StorefrontSettings
from .db import CustomerRow, RewardLedgerRow, utcnow
from .errors import InsufficientPoints
from .models import LedgerEntryType, RewardLedgerEntry

log = logging.getLogger(__name__)


def points_for_amount(amount: Decimal, settings: StorefrontSettings) -> int:
    """
    Loyalty points earned for a paid amount: ``floor(amount × earn rate)`` times
    the highest qualifying multiplier.
    """
    base = int((amount * settings.reward_earn_rate).to_integral_value(rounding=ROUND_FLOOR))
    if base <= 0:
        return 0
    multiplier = 1
    if settings.loyalty_multipliers_enabled:
        qualifying = [m for m in settings.loyalty_multipliers if amount >= m.min_amount]
        if qualifying:
            multiplier = max(qualifying, key=lambda m: m.min_amount).multiplier
    return base * multiplier


class RewardLedger:
    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    def register_customer(self, user_id: str, email: str, name: str = ""):
        with self._session.begin() as session:
            if session.get(CustomerRow, user_id) is None:
                session.add(CustomerRow(id=user_id, email=email, name=name, reward_points=0))

    def balance(self, user_id: Optional[str]) -> int:
        """Cached balance; 0 for guests and unknown customers."""
        if not user_id:
            return 0
        with self._session() as session:
            row = session.get(CustomerRow, user_id)
            return row.reward_points if row else 0

    def ledger_balance(self, user_id: str) -> int:
        with self._session() as session:
            total = session.execute(
                select(func.coalesce(func.sum(RewardLedgerRow.amount), 0))
                .where(RewardLedgerRow.user_id == user_id)
            ).scalar_one()
            return int(total)

    def verify_balance(self, user_id: str) -> bool:
        """True when the cached balance equals the sum of the ledger entries."""
        cached = self.balance(user_id)
        summed = self.ledger_balance(user_id)
        if cached != summed:
            log.error(f"Reward balance drift for {user_id}: cached {cached}, ledger {summed}.")
            return False
        return True

    def history(self, user_id: str) -> List[RewardLedgerEntry]:
        with self._session() as session:
            rows = session.execute(
                select(RewardLedgerRow)
                .where(RewardLedgerRow.user_id == user_id)
                .order_by(RewardLedgerRow.id)
            ).scalars().all()
            return [_entry_from_row(r) for r in rows]

    def redeem(self, user_id: str, points: int, order_id: str) -> RewardLedgerEntry:
        """
        Debits ``points`` for an order.

        Raises:
            InsufficientPoints: If the balance at write time is below ``points``.
        """
        try:
            return self._redeem(user_id, points, order_id)
        except IntegrityError:
            log.info(f"[Order: {order_id}] Redemption recorded concurrently; skipping.")
            return self._recorded_entry(user_id, order_id, LedgerEntryType.REDEEMED)

    def _redeem(self, user_id: str, points: int, order_id: str) -> RewardLedgerEntry:
        with self._session.begin() as session:
            existing = _entry_for_order(session, user_id, order_id, LedgerEntryType.REDEEMED)
            if existing is not None:
                log.info(f"[Order: {order_id}] Redemption already on ledger; skipping.")
                return _entry_from_row(existing)

            result = session.execute(
                update(CustomerRow)
                .where(CustomerRow.id == user_id, CustomerRow.reward_points >= points)
                .values(reward_points=CustomerRow.reward_points - points)
            )
            if result.rowcount != 1:
                raise InsufficientPoints(f"Balance of {user_id} is below {points} points.")

            row = _append(session, user_id, LedgerEntryType.REDEEMED, -points,
                          f"Redeemed {points} points for order #{order_id}", order_id)
            return _entry_from_row(row)

    def credit_for_order(self, user_id: str, order_id: str, amount: Decimal,
                         settings: StorefrontSettings) -> Optional[RewardLedgerEntry]:
        """
        Credits loyalty points for a paid order. Returns None when rewards are
        disabled or the order earns nothing.
        """
        if not settings.rewards_enabled:
            return None
        points = points_for_amount(amount, settings)
        if points == 0:
            return None
        try:
            return self._credit(user_id, order_id, amount, points)
        except IntegrityError:
            log.info(f"[Order: {order_id}] Points credited concurrently; skipping.")
            return self._recorded_entry(user_id, order_id, LedgerEntryType.EARNED)

    def _credit(self, user_id: str, order_id: str, amount: Decimal, points: int) -> Optional[RewardLedgerEntry]:
        with self._session.begin() as session:
            existing = _entry_for_order(session, user_id, order_id, LedgerEntryType.EARNED)
            if existing is not None:
                log.info(f"[Order: {order_id}] Points already credited; skipping.")
                return _entry_from_row(existing)

            result = session.execute(
                update(CustomerRow)
                .where(CustomerRow.id == user_id)
                .values(reward_points=CustomerRow.reward_points + points)
            )
            if result.rowcount != 1:
                log.warning(f"[Order: {order_id}] No customer {user_id}; {points} points not credited.")
                return None
            row = _append(session, user_id, LedgerEntryType.EARNED, points,
                          f"Earned {points} points for order #{order_id}", order_id,
                          details={"orderAmount": str(amount)})
            return _entry_from_row(row)

    def _recorded_entry(self, user_id: str, order_id: str, entry_type: LedgerEntryType) -> RewardLedgerEntry:
        with self._session() as session:
            return _entry_from_row(_entry_for_order(session, user_id, order_id, entry_type))

    def adjust(self, user_id: str, delta: int, reason: str) -> RewardLedgerEntry:
        """Admin adjustment. Negative deltas are floored so the balance never goes below zero."""
        with self._session.begin() as session:
            customer = session.get(CustomerRow, user_id, with_for_update=True)
            if customer is None:
                raise KeyError(user_id)
            applied = max(delta, -customer.reward_points)
            customer.reward_points = customer.reward_points + applied
            session.flush()
            row = _append(session, user_id, LedgerEntryType.ADMIN_ADJUSTMENT, applied, reason, None,
                          details={"requested": delta})
            return _entry_from_row(row)


def _entry_for_order(session, user_id: str, order_id: str, entry_type: LedgerEntryType):
    return session.execute(
        select(RewardLedgerRow).where(
            RewardLedgerRow.user_id == user_id,
            RewardLedgerRow.order_ref == order_id,
            RewardLedgerRow.type == entry_type.value,
        )
    ).scalars().first()


def _append(session, user_id: str, entry_type: LedgerEntryType, amount: int,
            description: str, order_id: Optional[str], details: Optional[dict] = None) -> RewardLedgerRow:
    balance_after = session.execute(
        select(CustomerRow.reward_points).where(CustomerRow.id == user_id)
    ).scalar_one()
    row = RewardLedgerRow(
        user_id=user_id,
        type=entry_type.value,
        amount=amount,
        balance_after=balance_after,
        description=description,
        order_ref=order_id,
        details=details,
        created_at=utcnow(),
    )
    session.add(row)
    session.flush()
    return row


def _entry_from_row(row: RewardLedgerRow) -> RewardLedgerEntry:
    return RewardLedgerEntry(
        id=row.id,
        user_id=row.user_id,
        type=LedgerEntryType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        description=row.description,
        order_ref=row.order_ref,
        created_at=row.created_at,
    )

"""
workflow.py — Core Orchestration Logic for Checkout

This module contains the checkout coordinator. It prices carts for preview
and commits paid orders, coordinating the pricing resolver, coupon validator,
discount stack, payment reconciler, order store, reward ledger and the
post-commit side effects in the correct sequence.

Commit Overview:
1. Open a payment audit record for the transaction reference
2. Verify the checkout signature (when supplied) and fetch the captured payment
3. Re-price the cart server-side and run the discount stack
4. Reconcile the computed total against the captured amount
5. Score fraud risk (advisory, flags only)
6. Persist the order (unique per transaction reference)
7. Link the audit record, redeem reward points, dispatch side effects
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from .coupons import CouponValidator
from .config import StorefrontSettings
from .db import utcnow
from .discounts import DiscountInputs, compute_breakdown
from .errors import CheckoutError, DuplicateTransaction
from .models import (
    CartItem,
    CommitOrderRequest,
    CustomerInfo,
    DiscountBreakdown,
    Order,
    PaymentChannel,
    PaymentStatus,
    QuoteRequest,
    ShippingInfo,
)
from .pricing import PricedCart, PricingResolver
from .reconciliation import PaymentReconciler
from .rewards import RewardLedger
from .stores import OrderStore, SettingsStore
from .tasks import OrderTasks

log = logging.getLogger(__name__)


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


class CheckoutCoordinator:
    def __init__(
        self,
        settings: SettingsStore,
        pricing: PricingResolver,
        coupons: CouponValidator,
        ledger: RewardLedger,
        orders: OrderStore,
        reconciler: PaymentReconciler,
        tasks: OrderTasks,
    ):
        self.settings = settings
        self.pricing = pricing
        self.coupons = coupons
        self.ledger = ledger
        self.orders = orders
        self.reconciler = reconciler
        self.tasks = tasks

    def _price(
        self,
        items: List[CartItem],
        coupon_code: Optional[str],
        reward_points: int,
        channel: PaymentChannel,
        customer: Optional[CustomerInfo],
        settings: StorefrontSettings,
        now: datetime,
    ) -> Tuple[PricedCart, DiscountBreakdown]:
        """The one pricing path shared by preview and commit."""
        priced = self.pricing.resolve(items, settings)
        coupon = None
        if coupon_code:
            coupon = self.coupons.validate(coupon_code, priced.subtotal, customer, now)
        balance = self.ledger.balance(customer.user_id if customer else None) if reward_points else 0
        breakdown = compute_breakdown(DiscountInputs(
            subtotal=priced.subtotal,
            item_count=priced.item_count,
            channel=channel,
            settings=settings,
            coupon=coupon,
            reward_points=reward_points,
            reward_balance=balance,
        ))
        return priced, breakdown

    def quote_cart(self, request: QuoteRequest, now: Optional[datetime] = None) -> DiscountBreakdown:
        """
        Cart preview. Performs no writes.

        Raises:
            ProductUnavailable, CouponInvalid, InsufficientPoints, RedemptionCapExceeded
        """
        settings = self.settings.load()
        _, breakdown = self._price(
            request.items, request.coupon_code, request.reward_points, request.payment_channel,
            request.customer, settings, now or utcnow(),
        )
        return breakdown

    def commit_order(self, request: CommitOrderRequest, client_ip: Optional[str] = None,
                     now: Optional[datetime] = None) -> Order:
        """
        Commits an order for a payment the shopper already made (or for COD).

        The order is persisted only when the gateway confirms the capture and
        the captured amount matches the server-computed total. Everything
        after the insert is best effort and never turns a placed order into an
        error.

        Args:
            request (CommitOrderRequest): Cart, payment reference and customer.
            client_ip (str): Caller address, used for risk scoring.
            now (datetime): Evaluation instant for coupon windows; defaults to now.

        Returns:
            Order: The committed order.

        Raises:
            InvalidSignature: The checkout signature did not verify.
            PaymentNotCaptured: Gateway status is not captured/authorized, or
                the gateway could not be reached.
            ProductUnavailable, CouponInvalid, InsufficientPoints,
            RedemptionCapExceeded: The cart does not price.
            AmountMismatch: Captured amount differs beyond the tolerance.
            DuplicateTransaction: An order already exists for this reference.
        """
        now = now or utcnow()
        txn_ref = request.transaction_ref
        log_prefix = f"[Txn: {txn_ref}]"
        customer = request.customer
        channel = request.payment_channel
        settings = self.settings.load()

        log.info(f"{log_prefix} Commit requested ({channel.value}, {len(request.items)} lines).")

        # Step 1: audit record before the gateway is consulted
        audit_id = self.reconciler.open_audit(
            txn_ref, channel,
            user_id=customer.user_id,
            customer_email=customer.email,
            client_ip=client_ip,
            client_amount=request.client_amount,
        )

        try:
            if self.orders.get_by_transaction_ref(txn_ref) is not None:
                raise DuplicateTransaction(f"An order for transaction {txn_ref} already exists.")

            # Step 2: payment confirmation
            txn = None
            if channel.is_online:
                if request.signature and request.gateway_order_ref:
                    self.reconciler.check_signature(audit_id, txn_ref, request.gateway_order_ref, request.signature)
                txn = self.reconciler.fetch_captured(audit_id, txn_ref)
            else:
                self.reconciler.record_cash_on_delivery(audit_id)
                log.info(f"{log_prefix} Cash on delivery; no gateway capture to verify.")

            # Step 3: server-side pricing
            priced, breakdown = self._price(
                request.items, request.coupon_code, request.reward_points, channel, customer, settings, now,
            )

            # Step 4: reconciliation
            if txn is not None:
                self.reconciler.reconcile_amount(
                    audit_id, breakdown.final_amount, txn, settings.reconciliation_tolerance_minor
                )

            # Step 5: risk (never blocks)
            risk = self.reconciler.assess_risk(audit_id, client_ip, customer.email, settings, now=now)

            # Step 6: persist
            order = Order(
                id=new_order_id(),
                transaction_ref=txn_ref,
                customer=customer,
                items=priced.items,
                breakdown=breakdown,
                amount=breakdown.final_amount,
                payment_channel=channel,
                payment_status=PaymentStatus.PAID if channel.is_online else PaymentStatus.PENDING,
                shipping=ShippingInfo(address=request.shipping_address, shipping_cost=breakdown.shipping_cost),
                created_at=now,
                updated_at=now,
            )
            self.orders.insert(order)
        except CheckoutError as e:
            log.warning(f"{log_prefix} Checkout rejected: {e.code} ({e.message})")
            self.reconciler.record_rejection(audit_id, e)
            raise

        log.info(f"{log_prefix}[Order: {order.id}] Order committed, amount ₹{order.amount}.")

        # Step 7: post-commit. The order stands whatever happens from here on.
        try:
            self.reconciler.attach_order(audit_id, order.id)
        except Exception as e:
            log.critical(f"[Order: {order.id}] Could not link audit record {audit_id}: {e}")

        if order.reward_points_redeemed:
            try:
                self.ledger.redeem(customer.user_id, order.reward_points_redeemed, order.id)
            except Exception as e:
                log.critical(
                    f"[Order: {order.id}] Reward redemption of {order.reward_points_redeemed} points "
                    f"failed after commit: {e}. Manual ledger correction required."
                )

        try:
            self.tasks.on_order_committed(order, settings, flagged=risk.flagged)
            if risk.flagged:
                self.tasks.on_audit_flagged(txn_ref, risk.score, risk.reasons)
        except Exception as e:
            log.critical(
                f"[Order: {order.id}] Post-commit tasks could not be dispatched: {e}. "
                f"Notifications, invoice and shipment need manual follow-up."
            )
        return order

"""
tasks.py — Post-commit Order Tasks

The concrete side effects of a committed order and of each later status
change. Every public ``on_*`` method only schedules work on the dispatcher and
returns at once. A collaborator configured as None skips its task.

Tasks that write shared state are idempotent on their own:
    - loyalty credit: one ``earned`` ledger entry per order
    - coupon usage: one redemption row per (coupon, order)
"""

import logging
from decimal import Decimal
from typing import Optional

from .config import StorefrontSettings
from .dispatcher import SideEffectDispatcher
from .models import Order, OrderStatus
from .rewards import RewardLedger
from .stores import CouponStore, OrderStore

log = logging.getLogger(__name__)

STATUS_MESSAGES = {
    OrderStatus.PROCESSING: "is being prepared",
    OrderStatus.SHIPPED: "has been shipped",
    OrderStatus.DELIVERED: "has been delivered",
    OrderStatus.CANCELLED: "has been cancelled",
}


def _rupees(amount: Decimal) -> str:
    return f"₹{amount:,.2f}"


def render_confirmation_email(order: Order) -> dict:
    lines = "".join(
        f"<tr><td>{item.name} ({item.size}) × {item.quantity}</td><td>{_rupees(item.line_total)}</td></tr>"
        for item in order.items
    )
    b = order.breakdown
    html = (
        f"<h2>Thank you, {order.customer.name or 'there'}!</h2>"
        f"<p>Your order <b>#{order.id}</b> has been placed.</p>"
        f"<table>{lines}</table>"
        f"<p>Subtotal: {_rupees(b.subtotal)}<br>"
        f"Shipping: {_rupees(b.shipping_cost)}<br>"
        f"You saved: {_rupees(b.total_savings)}<br>"
        f"<b>Total: {_rupees(order.amount)}</b></p>"
    )
    return {"to": order.customer.email, "subject": f"Order #{order.id} confirmed", "html": html}


def render_status_email(order: Order) -> dict:
    text = f"Your order #{order.id} {STATUS_MESSAGES.get(order.status, 'was updated')}."
    if order.status is OrderStatus.SHIPPED and order.shipping.tracking_number:
        courier = order.shipping.courier or "our courier partner"
        text += f" Track it with {courier}: {order.shipping.tracking_number}."
    return {"to": order.customer.email, "subject": f"Order #{order.id}: {order.status.value}", "html": f"<p>{text}</p>"}


def render_operator_alert(order: Order, flagged: bool = False) -> dict:
    text = (
        f"🛒 <b>New order #{order.id}</b>\n"
        f"Customer: {order.customer.name} ({order.customer.email})\n"
        f"Items: {order.breakdown.item_count}\n"
        f"Amount: {_rupees(order.amount)} via {order.payment_channel.value.upper()}"
    )
    if flagged:
        text += "\n⚠️ Payment audit flagged for review."
    return {"text": text}


class OrderTasks:
    def __init__(self, dispatcher: SideEffectDispatcher, orders: OrderStore, coupons: CouponStore,
                 ledger: RewardLedger, email=None, sms=None, telegram=None, invoices=None, shipments=None):
        self.dispatcher = dispatcher
        self.orders = orders
        self.coupons = coupons
        self.ledger = ledger
        self.email = email
        self.sms = sms
        self.telegram = telegram
        self.invoices = invoices
        self.shipments = shipments

    # --- fan-out ---
    def on_order_committed(self, order: Order, settings: StorefrontSettings, flagged: bool = False):
        """Schedules every post-commit task for a freshly committed order."""
        run = self.dispatcher.dispatch
        if self.email is not None:
            run("confirmation_email", self.email.send, render_confirmation_email(order), order_id=order.id)
        if self.sms is not None and order.customer.phone:
            run("confirmation_sms", self.sms.send, {
                "to": order.customer.phone,
                "message": f"Order #{order.id} placed. Amount {_rupees(order.amount)}.",
            }, order_id=order.id)
        if self.telegram is not None:
            run("operator_alert", self.telegram.send, render_operator_alert(order, flagged), order_id=order.id)
        if order.payment_channel.is_online:
            run("loyalty_credit", self.credit_loyalty, order, settings, order_id=order.id)
        if order.coupon_code:
            run("coupon_usage", self.record_coupon_usage, order, order_id=order.id)
        if self.invoices is not None:
            run("invoice", self.create_invoice, order, order_id=order.id)
        if self.shipments is not None:
            run("shipment", self.create_shipment, order, order_id=order.id, critical=True)

    def on_status_changed(self, order: Order, settings: Optional[StorefrontSettings] = None):
        run = self.dispatcher.dispatch
        if self.email is not None:
            run("status_email", self.email.send, render_status_email(order), order_id=order.id)
        if self.sms is not None and order.customer.phone:
            run("status_sms", self.sms.send, {
                "to": order.customer.phone,
                "message": f"Order #{order.id} {STATUS_MESSAGES.get(order.status, 'was updated')}.",
            }, order_id=order.id)
        if order.status is OrderStatus.DELIVERED and not order.payment_channel.is_online and settings is not None:
            run("loyalty_credit", self.credit_loyalty, order, settings, order_id=order.id)

    def on_audit_flagged(self, transaction_ref: str, score: int, reasons):
        if self.telegram is None:
            return
        text = f"⚠️ <b>Payment flagged</b>\nTxn: {transaction_ref}\nRisk: {score}\nReasons: {', '.join(reasons)}"
        self.dispatcher.dispatch("risk_alert", self.telegram.send, {"text": text})

    # --- tasks ---
    def credit_loyalty(self, order: Order, settings: StorefrontSettings):
        if not order.customer.user_id:
            return
        entry = self.ledger.credit_for_order(order.customer.user_id, order.id, order.amount, settings)
        if entry is not None:
            log.info(f"[Order: {order.id}] Credited {entry.amount} reward points.")

    def record_coupon_usage(self, order: Order):
        self.coupons.record_redemption(
            order.coupon_code, order.id, order.customer.user_id, order.customer.email
        )

    def create_invoice(self, order: Order):
        invoice_ref = self.invoices.create_from_order(order)
        self.orders.annotate_invoice(order.id, invoice_ref)

    def create_shipment(self, order: Order):
        shipment_ref = self.shipments.create_from_order(order)
        self.orders.annotate_shipping(order.id, shipment_ref=shipment_ref)

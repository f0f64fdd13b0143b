"""
lifecycle.py — Order Status State Machine

    Received → Processing → Shipped → Delivered
        └──────────┴───────────┴──→ Cancelled

Forward moves may skip states; backward moves are rejected. ``Delivered`` and
``Cancelled`` are terminal. Each update is a compare-and-set on the stored
status, so two concurrent transitions cannot both win.

Fulfilment reports status over RabbitMQ (see ``clients.start_shipment_status_listener``);
``apply_shipment_update`` maps those events onto transitions.
"""

import logging
from typing import Optional

from .errors import InvalidStatusTransition
from .models import Order, OrderStatus, PaymentStatus
from .stores import OrderStore, SettingsStore
from .tasks import OrderTasks

log = logging.getLogger(__name__)

FORWARD_FLOW = (
    OrderStatus.RECEIVED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

SHIPMENT_EVENTS = {
    "ORDER_PACKED": OrderStatus.PROCESSING,
    "ORDER_SHIPPED": OrderStatus.SHIPPED,
    "ORDER_DELIVERED": OrderStatus.DELIVERED,
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new is OrderStatus.CANCELLED:
        return True
    return FORWARD_FLOW.index(new) > FORWARD_FLOW.index(current)


class OrderLifecycle:
    def __init__(self, orders: OrderStore, settings: SettingsStore, tasks: OrderTasks):
        self.orders = orders
        self.settings = settings
        self.tasks = tasks

    def transition(self, order_id: str, new_status: OrderStatus, tracking_number: Optional[str] = None,
                   courier: Optional[str] = None) -> Order:
        """
        Moves an order to ``new_status`` and dispatches the status notifications.

        A COD order reaching ``Delivered`` is marked paid and earns its loyalty
        points at that moment.

        Returns:
            Order: The order as stored after the transition.
        Raises:
            OrderNotFound: If there is no such order.
            InvalidStatusTransition: If the move is not allowed from the
                current status, or the status changed underneath us.
        """
        order = self.orders.get(order_id)
        current = order.status
        if not can_transition(current, new_status):
            raise InvalidStatusTransition(
                f"Order {order_id} cannot move from {current.value} to {new_status.value}."
            )
        if not self.orders.update_status(order_id, current, new_status):
            raise InvalidStatusTransition(f"Order {order_id} changed status concurrently; retry.")
        log.info(f"[Order: {order_id}] Status {current.value} → {new_status.value}.")

        shipping_fields = {}
        if tracking_number:
            shipping_fields["tracking_number"] = tracking_number
        if courier:
            shipping_fields["courier"] = courier
        if shipping_fields:
            self.orders.annotate_shipping(order_id, **shipping_fields)

        if new_status is OrderStatus.DELIVERED and not order.payment_channel.is_online:
            self.orders.set_payment_status(order_id, PaymentStatus.PAID)
            log.info(f"[Order: {order_id}] COD payment collected on delivery.")

        updated = self.orders.get(order_id)
        self.tasks.on_status_changed(updated, self.settings.load())
        return updated

    def apply_shipment_update(self, message: dict) -> Optional[Order]:
        """
        Handles one fulfilment status message (``orderId``, ``status``,
        optional ``trackingNumber`` and ``courier``). Unknown events and
        repeats of the current status are ignored.
        """
        order_id = message.get("orderId")
        event = message.get("status", "UNKNOWN")
        new_status = SHIPMENT_EVENTS.get(event)
        if not order_id or new_status is None:
            log.info(f"[SHIPMENT-STATUS][Order: {order_id}] Ignoring event {event}.")
            return None
        if self.orders.get(order_id).status is new_status:
            log.info(f"[SHIPMENT-STATUS][Order: {order_id}] Already {new_status.value}.")
            return None
        return self.transition(
            order_id,
            new_status,
            tracking_number=message.get("trackingNumber"),
            courier=message.get("courier"),
        )

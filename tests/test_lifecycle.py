import pytest

from checkout_service.errors import InvalidStatusTransition, OrderNotFound
from checkout_service.lifecycle import can_transition
from checkout_service.models import OrderStatus, PaymentChannel, PaymentStatus

from conftest import make_order


class TestTransitionRules:
    @pytest.mark.parametrize("current,new", [
        (OrderStatus.RECEIVED, OrderStatus.PROCESSING),
        (OrderStatus.RECEIVED, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.SHIPPED, OrderStatus.PROCESSING),
        (OrderStatus.RECEIVED, OrderStatus.RECEIVED),
        (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.PROCESSING),
    ])
    def test_rejected(self, current, new):
        assert not can_transition(current, new)


class TestOrderLifecycle:
    def test_transition_records_tracking_and_notifies(self, lifecycle, orders, customer, email, dispatcher):
        orders.insert(make_order("ORD-1", customer))

        order = lifecycle.transition("ORD-1", OrderStatus.SHIPPED, tracking_number="TRK1", courier="Delhivery")
        dispatcher.wait(timeout=5)

        assert order.status is OrderStatus.SHIPPED
        assert order.shipping.tracking_number == "TRK1"
        assert "TRK1" in email.sent[0]["html"]

    def test_backward_transition_rejected(self, lifecycle, orders, customer):
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.SHIPPED))

        with pytest.raises(InvalidStatusTransition):
            lifecycle.transition("ORD-1", OrderStatus.PROCESSING)
        assert orders.get("ORD-1").status is OrderStatus.SHIPPED

    def test_unknown_order(self, lifecycle):
        with pytest.raises(OrderNotFound):
            lifecycle.transition("ORD-404", OrderStatus.PROCESSING)

    def test_lost_race_rejected(self, lifecycle, orders, customer, monkeypatch):
        orders.insert(make_order("ORD-1", customer))
        monkeypatch.setattr(lifecycle.orders, "update_status", lambda *args: False)

        with pytest.raises(InvalidStatusTransition):
            lifecycle.transition("ORD-1", OrderStatus.PROCESSING)

    def test_cod_delivery_marks_paid_and_credits_points(self, lifecycle, orders, customer, ledger, dispatcher):
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.SHIPPED, channel=PaymentChannel.COD,
                                 amount="1200"))

        order = lifecycle.transition("ORD-1", OrderStatus.DELIVERED)
        dispatcher.wait(timeout=5)

        assert order.payment_status is PaymentStatus.PAID
        assert ledger.balance("user-1") == 12

    def test_online_delivery_does_not_credit_again(self, lifecycle, orders, customer, ledger, dispatcher):
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.SHIPPED, amount="1200"))

        lifecycle.transition("ORD-1", OrderStatus.DELIVERED)
        dispatcher.wait(timeout=5)

        assert ledger.balance("user-1") == 0


class TestShipmentUpdates:
    def test_shipped_event_applied(self, lifecycle, orders, customer):
        orders.insert(make_order("ORD-1", customer))

        lifecycle.apply_shipment_update({"orderId": "ORD-1", "status": "ORDER_SHIPPED", "trackingNumber": "TRK9"})

        stored = orders.get("ORD-1")
        assert stored.status is OrderStatus.SHIPPED
        assert stored.shipping.tracking_number == "TRK9"

    def test_repeated_event_ignored(self, lifecycle, orders, customer):
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.SHIPPED))

        assert lifecycle.apply_shipment_update({"orderId": "ORD-1", "status": "ORDER_SHIPPED"}) is None

    def test_unknown_event_ignored(self, lifecycle, orders, customer):
        orders.insert(make_order("ORD-1", customer))

        assert lifecycle.apply_shipment_update({"orderId": "ORD-1", "status": "ITEMS_PICKED"}) is None
        assert orders.get("ORD-1").status is OrderStatus.RECEIVED

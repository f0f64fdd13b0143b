"""Shared fixtures for checkout service tests."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from checkout_service.config import StorefrontSettings
from checkout_service.db import create_database
from checkout_service.dispatcher import SideEffectDispatcher
from checkout_service.gateway import FakeGateway
from checkout_service.main import build_services
from checkout_service.models import (
    CartItem,
    CommitOrderRequest,
    Coupon,
    CustomerInfo,
    DiscountBreakdown,
    DiscountType,
    Order,
    OrderStatus,
    PaymentChannel,
    PaymentStatus,
    ResolvedLineItem,
)
from checkout_service.rewards import RewardLedger
from checkout_service.stores import AuditStore, CatalogStore, CouponStore, OrderStore, SettingsStore

NOW = datetime(2026, 3, 15, 12, 0, 0)


class RecordingSender:
    """Stands in for the e-mail, SMS and Telegram clients."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, payload):
        if self.fail:
            raise ConnectionError("provider down")
        self.sent.append(payload)
        return {"id": f"msg-{len(self.sent)}"}


class RecordingInvoices:
    def __init__(self):
        self.orders = []

    def create_from_order(self, order):
        self.orders.append(order.id)
        return f"INV-{order.id}"


class RecordingShipments:
    def __init__(self):
        self.orders = []

    def create_from_order(self, order):
        self.orders.append(order.id)
        return f"SHP-{len(self.orders)}"


@pytest.fixture
def session_factory(tmp_path):
    factory, engine = create_database(f"sqlite:///{tmp_path / 'checkout.db'}")
    yield factory
    engine.dispose()


@pytest.fixture
def settings():
    return StorefrontSettings()


@pytest.fixture
def catalog(session_factory):
    store = CatalogStore(session_factory)
    store.add_product("tee-classic", "Classic Tee", Decimal("400"))
    store.add_product("tee-oversized", "Oversized Tee", Decimal("200"))
    store.add_product("tee-retired", "Retired Tee", Decimal("300"), is_deleted=True)
    store.add_design("dsg-sunset", "Sunset", Decimal("200"))
    store.add_design("dsg-archived", "Archived", Decimal("90"), is_active=False)
    return store


@pytest.fixture
def orders(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def coupons(session_factory):
    return CouponStore(session_factory)


@pytest.fixture
def audits(session_factory):
    return AuditStore(session_factory)


@pytest.fixture
def settings_store(session_factory):
    return SettingsStore(session_factory)


@pytest.fixture
def ledger(session_factory):
    ledger = RewardLedger(session_factory)
    ledger.register_customer("user-1", "asha@example.com", "Asha")
    return ledger


@pytest.fixture
def customer():
    return CustomerInfo(user_id="user-1", email="asha@example.com", name="Asha", phone="+919800000001")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email():
    return RecordingSender()


@pytest.fixture
def sms():
    return RecordingSender()


@pytest.fixture
def telegram():
    return RecordingSender()


@pytest.fixture
def invoices():
    return RecordingInvoices()


@pytest.fixture
def shipments():
    return RecordingShipments()


@pytest.fixture
def dispatcher():
    dispatcher = SideEffectDispatcher(max_workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def services(session_factory, catalog, ledger, gateway, dispatcher, email, sms, telegram, invoices, shipments):
    return build_services(
        session_factory,
        gateway=gateway,
        dispatcher=dispatcher,
        email=email,
        sms=sms,
        telegram=telegram,
        invoices=invoices,
        shipments=shipments,
    )


@pytest.fixture
def coordinator(services):
    return services.coordinator


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


def three_item_cart():
    """Two classic tees and one oversized tee: 3 items, subtotal ₹1000."""
    return [
        CartItem(product_ref="tee-classic", name="Classic Tee", quantity=2, size="M", price=Decimal("1")),
        CartItem(product_ref="tee-oversized", name="Oversized Tee", quantity=1, size="L"),
    ]


def make_coupon(code="FLAT100", discount_type=DiscountType.FIXED, value="100", **fields):
    defaults = dict(
        code=code,
        discount_type=discount_type,
        discount_value=Decimal(value),
        valid_from=NOW - timedelta(days=30),
        valid_until=NOW + timedelta(days=30),
    )
    defaults.update(fields)
    return Coupon(**defaults)


def commit_request(customer, transaction_ref="pay_001", channel=PaymentChannel.CARD, items=None, **fields):
    return CommitOrderRequest(
        items=items or three_item_cart(),
        transaction_ref=transaction_ref,
        payment_channel=channel,
        customer=customer,
        **fields,
    )


def make_order(order_id, customer, status=OrderStatus.RECEIVED, coupon_code=None,
               channel=PaymentChannel.CARD, amount="500"):
    amount = Decimal(amount)
    item = ResolvedLineItem(product_ref="tee-classic", name="Classic Tee", quantity=1, size="M",
                            unit_price=amount, line_total=amount)
    return Order(
        id=order_id,
        transaction_ref=f"txn-{order_id}",
        customer=customer,
        items=[item],
        breakdown=DiscountBreakdown(subtotal=amount, item_count=1, final_amount=amount, coupon_code=coupon_code),
        amount=amount,
        payment_channel=channel,
        payment_status=PaymentStatus.PAID if channel.is_online else PaymentStatus.PENDING,
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )

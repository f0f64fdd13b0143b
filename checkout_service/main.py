"""
main.py — FastAPI Entry Point for the Checkout Service

This module provides the REST API of the storefront checkout. It sits between
the storefront client and the checkout core that prices carts, reconciles
payments and commits orders.

Responsibilities:
    • Quote carts (preview, no side effects)
    • Commit paid and cash-on-delivery orders
    • Accept order status changes from operators and fulfilment
    • Receive payment gateway webhooks
    • Start and stop the background side-effect workers and the shipment status listener
"""

import json
import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import config
from .clients import (
    EmailClient,
    InvoiceClient,
    RazorpayGateway,
    ShipmentClient,
    SmsClient,
    TelegramClient,
    start_shipment_status_listener,
)
from .coupons import CouponValidator
from .db import create_database
from .dispatcher import SideEffectDispatcher
from .errors import (
    AmountMismatch,
    CheckoutError,
    DuplicateTransaction,
    InvalidSignature,
    OrderNotFound,
    PaymentNotCaptured,
    ProductUnavailable,
)
from .gateway import FakeGateway, PaymentGateway
from .lifecycle import OrderLifecycle
from .logging_config import get_logger, setup_logging
from .models import CommitOrderRequest, DiscountBreakdown, Order, QuoteRequest, StatusUpdateRequest
from .pricing import PricingResolver
from .reconciliation import PaymentReconciler
from .rewards import RewardLedger
from .stores import AuditStore, CatalogStore, CouponStore, OrderStore, SettingsStore
from .tasks import OrderTasks
from .workflow import CheckoutCoordinator

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Storefront Checkout Service")

STATUS_CODES = {
    ProductUnavailable: 404,
    OrderNotFound: 404,
    DuplicateTransaction: 409,
    PaymentNotCaptured: 402,
    AmountMismatch: 422,
}


@dataclass
class Services:
    coordinator: CheckoutCoordinator
    lifecycle: OrderLifecycle
    reconciler: PaymentReconciler
    dispatcher: SideEffectDispatcher


def build_services(session_factory, gateway: PaymentGateway, dispatcher: SideEffectDispatcher,
                   email=None, sms=None, telegram=None, invoices=None, shipments=None) -> Services:
    """Wires the checkout core onto a database and a set of collaborators."""
    settings = SettingsStore(session_factory)
    orders = OrderStore(session_factory)
    coupons = CouponStore(session_factory)
    ledger = RewardLedger(session_factory)
    reconciler = PaymentReconciler(gateway, AuditStore(session_factory))
    tasks = OrderTasks(dispatcher, orders, coupons, ledger, email=email, sms=sms, telegram=telegram,
                       invoices=invoices, shipments=shipments)
    coordinator = CheckoutCoordinator(
        settings=settings,
        pricing=PricingResolver(CatalogStore(session_factory)),
        coupons=CouponValidator(coupons, orders),
        ledger=ledger,
        orders=orders,
        reconciler=reconciler,
        tasks=tasks,
    )
    lifecycle = OrderLifecycle(orders, settings, tasks)
    return Services(coordinator=coordinator, lifecycle=lifecycle, reconciler=reconciler, dispatcher=dispatcher)


def _build_gateway() -> PaymentGateway:
    if config.PAYMENT_GATEWAY_MODE == "fake":
        log.warning("Using the in-memory fake payment gateway.")
        return FakeGateway()
    return RazorpayGateway()


# Startup Event: wire services, launch the shipment status listener
@app.on_event("startup")
def on_startup():
    """
    FastAPI startup event handler.

    Creates the database schema, builds the checkout services and starts the
    shipment status listener as a daemon thread. Notification and invoice
    clients are only created when their endpoint is configured.
    """
    log.info("Checkout service starting...")
    session_factory, _ = create_database(config.DATABASE_URL)
    services = build_services(
        session_factory,
        gateway=_build_gateway(),
        dispatcher=SideEffectDispatcher(config.SIDE_EFFECT_WORKERS),
        email=EmailClient() if config.EMAIL_API_URL else None,
        sms=SmsClient() if config.SMS_API_URL else None,
        telegram=TelegramClient() if config.TELEGRAM_BOT_TOKEN else None,
        invoices=InvoiceClient() if config.INVOICE_SERVICE_URL else None,
        shipments=ShipmentClient(),
    )
    app.state.services = services

    if config.SHIPMENT_LISTENER_ENABLED:
        listener_thread = threading.Thread(
            target=start_shipment_status_listener,
            args=(services.lifecycle.apply_shipment_update,),
            daemon=True,
        )
        listener_thread.start()
        log.info("Shipment status listener thread started.")


@app.on_event("shutdown")
def on_shutdown():
    services: Optional[Services] = getattr(app.state, "services", None)
    if services is not None:
        services.dispatcher.shutdown(wait_for_tasks=True)
    log.info("Checkout service stopped.")


# Dependencies
def get_coordinator(request: Request) -> CheckoutCoordinator:
    return request.app.state.services.coordinator


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.services.lifecycle


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.services.reconciler


def client_ip_of(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# Error mapping
@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    status_code = STATUS_CODES.get(type(exc), 400)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"code": "internal_error", "message": "Internal server error."})


# API Endpoints
@app.post("/v1/cart/quote", response_model=DiscountBreakdown, response_model_by_alias=True)
def quote_cart(quote: QuoteRequest, coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    """
    Prices a cart exactly as a commit would, without writing anything.

    Returns:
        DiscountBreakdown: Subtotal, shipping, every discount and the final amount.
    """
    return coordinator.quote_cart(quote)


@app.post("/v1/orders", status_code=201, response_model=Order, response_model_by_alias=True)
def commit_order(commit: CommitOrderRequest, request: Request,
                 coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    """
    Commits an order once its payment is verified.

    Response code 201 means the order is placed; notifications, invoice and
    shipment follow in the background and never change this response.

    Raises:
        CheckoutError: Mapped to 400/402/404/409/422 by ``checkout_error_handler``.
    """
    log.info(f"[Txn: {commit.transaction_ref}] Order commit received.")
    return coordinator.commit_order(commit, client_ip=client_ip_of(request))


@app.patch("/v1/orders/{order_id}/status", response_model=Order, response_model_by_alias=True)
def update_order_status(order_id: str, update: StatusUpdateRequest,
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return lifecycle.transition(order_id, update.status, tracking_number=update.tracking_number,
                                courier=update.courier)


@app.post("/v1/payments/webhook")
async def payment_webhook(request: Request, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """
    Gateway webhook receiver.

    The signature (``X-Razorpay-Signature``) is checked against the raw body
    before the payload is parsed. The event is appended to the audit records
    of the payment it refers to.
    """
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature", "")
    if not reconciler.gateway.verify_webhook_signature(body, signature):
        log.warning("Webhook with invalid signature rejected.")
        raise InvalidSignature("Webhook signature did not verify.")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON.")
    event = payload.get("event", "unknown")
    payment = payload.get("payload", {}).get("payment", {}).get("entity", {})
    payment_ref = payment.get("id")
    if payment_ref:
        reconciler.record_webhook(payment_ref, event, {"status": payment.get("status"), "amount": payment.get("amount")})
    else:
        log.info(f"Webhook '{event}' carries no payment; ignored.")
    return {"status": "ok"}


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for monitoring systems and container orchestrators.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}

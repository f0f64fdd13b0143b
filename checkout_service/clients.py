"""
This module provides communication clients for the external systems checkout depends on:
- Payment gateway (REST API, Razorpay-compatible)
- E-mail, SMS and Telegram notification senders (REST APIs)
- Invoice service (REST API)
- Fulfilment / shipment queue (RabbitMQ)
Each class encapsulates its protocol logic, timeouts, error logging and connection management.
Errors are logged and re-raised; deciding whether a failure matters is left to the caller.
"""

import hmac
import json
import logging
import threading
import time
import uuid
from typing import Callable, Optional

import httpx
import pika

from . import config
from .gateway import GatewayTransaction, PaymentGateway, checkout_signature, sign
from .models import Order

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(5.0, read=8.0)


# --- Payment Gateway (REST) ---
class RazorpayGateway(PaymentGateway):
    """
    Payment gateway client over the Razorpay REST API.
    Only reads payments; charges are created client-side by the checkout widget.
    """
    def __init__(
        self,
        key_id: str = config.PAYMENT_GATEWAY_KEY_ID,
        key_secret: str = config.PAYMENT_GATEWAY_KEY_SECRET,
        webhook_secret: str = config.PAYMENT_WEBHOOK_SECRET,
        base_url: str = config.PAYMENT_GATEWAY_URL,
        client: Optional[httpx.Client] = None,
    ):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.client = client or httpx.Client(
            base_url=base_url, auth=(key_id, key_secret), timeout=DEFAULT_TIMEOUT
        )

    def close(self):
        self.client.close()

    def fetch_transaction(self, payment_ref: str) -> GatewayTransaction:
        """
        Fetches a payment from the gateway.
        Args:
            payment_ref (str): Gateway payment id (our transaction reference).
        Returns:
            GatewayTransaction: Status, captured amount in paise and payment method.
        Raises:
            httpx.TimeoutException: If the gateway does not answer in time.
            httpx.HTTPStatusError: If the gateway returns 4xx/5xx.
            ValueError: If the response body is not a well-formed payment.
        """
        try:
            response = self.client.get(f"/v1/payments/{payment_ref}")
            response.raise_for_status()
        except httpx.TimeoutException:
            log.error(f"[Txn: {payment_ref}] Payment gateway timeout.")
            raise
        except httpx.HTTPStatusError as e:
            log.error(f"[Txn: {payment_ref}] Payment gateway returned HTTP {e.response.status_code}.")
            raise
        try:
            data = response.json()
            return GatewayTransaction(
                payment_ref=data.get("id", payment_ref),
                status=data.get("status", "unknown"),
                captured_amount_minor=int(data.get("amount", 0)),
                method=data.get("method"),
                currency=data.get("currency", "INR"),
                email=data.get("email"),
            )
        except (ValueError, TypeError, AttributeError) as e:
            log.error(f"[Txn: {payment_ref}] Malformed payment gateway response: {e}")
            raise ValueError(f"Malformed gateway response for {payment_ref}") from e

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        if not self.key_secret:
            log.error("Gateway key secret not configured; refusing signature.")
            return False
        expected = checkout_signature(order_ref, payment_ref, self.key_secret)
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            log.error("Webhook secret not configured; refusing webhook.")
            return False
        return hmac.compare_digest(sign(payload, self.webhook_secret), signature)


# --- Notification senders (REST) ---
class EmailClient:
    """Transactional e-mail via an HTTP mail API."""
    def __init__(self, base_url: str = config.EMAIL_API_URL, api_key: str = config.EMAIL_API_KEY,
                 sender: str = config.EMAIL_SENDER, client: Optional[httpx.Client] = None):
        self.sender = sender
        self.client = client or httpx.Client(
            base_url=base_url, headers={"api-key": api_key}, timeout=DEFAULT_TIMEOUT
        )

    def close(self):
        self.client.close()

    def send(self, payload: dict) -> dict:
        """
        Sends one e-mail.
        Args:
            payload (dict): ``to``, ``subject`` and ``html`` keys.
        Returns:
            dict: The provider's JSON response (message id).
        Raises:
            httpx.HTTPError: On transport errors and 4xx/5xx answers.
        """
        body = {"sender": self.sender, **payload}
        try:
            response = self.client.post("/send", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            log.error(f"E-mail to {payload.get('to')} failed: {e}")
            raise


class SmsClient:
    """SMS via an HTTP SMS gateway."""
    def __init__(self, base_url: str = config.SMS_API_URL, api_key: str = config.SMS_API_KEY,
                 client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(
            base_url=base_url, headers={"authorization": api_key}, timeout=DEFAULT_TIMEOUT
        )

    def close(self):
        self.client.close()

    def send(self, payload: dict) -> dict:
        """
        Sends one SMS.
        Args:
            payload (dict): ``to`` (phone number) and ``message`` keys.
        Raises:
            httpx.HTTPError: On transport errors and 4xx/5xx answers.
        """
        try:
            response = self.client.post("/messages", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            log.error(f"SMS to {payload.get('to')} failed: {e}")
            raise


class TelegramClient:
    """Operator alerts through a Telegram bot."""
    def __init__(self, bot_token: str = config.TELEGRAM_BOT_TOKEN, chat_id: str = config.TELEGRAM_CHAT_ID,
                 base_url: str = config.TELEGRAM_API_URL, client: Optional[httpx.Client] = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.client = client or httpx.Client(base_url=base_url, timeout=DEFAULT_TIMEOUT)

    def close(self):
        self.client.close()

    def send(self, payload: dict) -> dict:
        """
        Posts a message to the operator chat.
        Args:
            payload (dict): ``text`` key (HTML allowed).
        Raises:
            httpx.HTTPError: On transport errors and 4xx/5xx answers.
        """
        body = {"chat_id": self.chat_id, "text": payload["text"], "parse_mode": "HTML"}
        try:
            response = self.client.post(f"/bot{self.bot_token}/sendMessage", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            log.error(f"Telegram alert failed: {e}")
            raise


# --- Invoice Service (REST) ---
class InvoiceClient:
    """Client for the invoice service that renders and stores GST invoices."""
    def __init__(self, base_url: str = config.INVOICE_SERVICE_URL, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=DEFAULT_TIMEOUT)

    def close(self):
        self.client.close()

    def create_from_order(self, order: Order) -> str:
        """
        Requests an invoice for a committed order.
        Returns:
            str: The invoice number.
        Raises:
            httpx.HTTPError: On transport errors and 4xx/5xx answers.
        """
        payload = order.model_dump(mode="json", by_alias=True)
        headers = {"Idempotency-Key": f"invoice-{order.id}"}
        try:
            response = self.client.post("/v1/invoices", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()["invoiceNumber"]
        except httpx.HTTPError as e:
            log.error(f"[Order: {order.id}] Invoice request failed: {e}")
            raise


# --- Shipment Client (MQ) ---
class ShipmentClient:
    """
    Publishes shipment instructions to the fulfilment queue (RabbitMQ).
    Connects lazily on first publish and reconnects when the connection dropped.
    """
    def __init__(self, host: str = config.RABBITMQ_HOST, queue: str = config.SHIPMENT_QUEUE):
        self.host = host
        self.queue = queue
        self.connection = None
        self.channel = None
        self._lock = threading.Lock()

    def _connect(self):
        """
        Establishes the RabbitMQ connection and declares the shipment queue.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            self.connection = pika.BlockingConnection(_connection_parameters(self.host))
            self.channel = self.connection.channel()
            self.channel.queue_declare(queue=self.queue, durable=True)
            log.info("Shipment client connected to RabbitMQ.")
        except pika.exceptions.AMQPConnectionError as e:
            log.critical(f"Cannot connect to RabbitMQ (fulfilment): {e}")
            raise

    def create_from_order(self, order: Order) -> str:
        """
        Publishes a persistent shipment instruction for an order.
        Returns:
            str: The instruction id, stored on the order as ``shipment_ref``.
        Raises:
            pika.exceptions.AMQPError: If publishing fails.
        """
        instruction_id = str(uuid.uuid4())
        message = {
            "instructionId": instruction_id,
            "orderId": order.id,
            "instructionTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "items": [
                {"name": i.name, "size": i.size, "quantity": i.quantity, "isCustom": i.is_custom}
                for i in order.items
            ],
            "shippingAddress": order.shipping.address.model_dump(mode="json", by_alias=True),
            "paymentChannel": order.payment_channel.value,
            "codAmount": str(order.amount) if not order.payment_channel.is_online else None,
        }
        with self._lock:
            try:
                if not self.connection or self.connection.is_closed:
                    self._connect()
                self.channel.basic_publish(
                    exchange='',
                    routing_key=self.queue,
                    body=json.dumps(message),
                    properties=pika.BasicProperties(delivery_mode=2),
                )
            except pika.exceptions.AMQPError as e:
                log.error(f"[Order: {order.id}] Failed to publish shipment instruction: {e}")
                self.connection = None
                raise
        log.info(f"[Order: {order.id}] Shipment instruction {instruction_id} queued.")
        return instruction_id

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()


def _connection_parameters(host: str) -> pika.ConnectionParameters:
    credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
    return pika.ConnectionParameters(host=host, credentials=credentials, heartbeat=60)


# --- Shipment status listener (MQ Consumer) ---
def start_shipment_status_listener(on_update: Callable[[dict], None],
                                   host: str = config.RABBITMQ_HOST,
                                   queue: str = config.SHIPMENT_STATUS_QUEUE):
    """
    Consumes fulfilment status updates forever (run it in a daemon thread).

    Each JSON message is handed to ``on_update``; the message is acked when the
    handler returns and dead-lettered when it is malformed or the handler
    raises. On connection loss the listener reconnects after 10 seconds.
    """
    log.info("Shipment status listener starting...")
    while True:
        try:
            connection = pika.BlockingConnection(_connection_parameters(host))
            channel = connection.channel()
            channel.queue_declare(queue=queue, durable=True)

            def callback(ch, method, properties, body):
                try:
                    data = json.loads(body)
                except json.JSONDecodeError:
                    log.error(f"[SHIPMENT-STATUS] Invalid JSON message: {body!r}")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                try:
                    on_update(data)
                except Exception as e:
                    log.error(f"[SHIPMENT-STATUS][Order: {data.get('orderId')}] Update rejected: {e}")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                ch.basic_ack(delivery_tag=method.delivery_tag)

            log.info("[SHIPMENT-STATUS] Listener active.")
            channel.basic_consume(queue=queue, on_message_callback=callback)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("Shipment listener: lost RabbitMQ connection. Reconnecting in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Shipment listener: unexpected error {e}. Restarting in 10s.")
            time.sleep(10)

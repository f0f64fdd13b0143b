import json

import httpx
import pika
import pytest

from checkout_service import clients
from checkout_service.clients import (
    EmailClient,
    InvoiceClient,
    RazorpayGateway,
    ShipmentClient,
    SmsClient,
    TelegramClient,
)
from checkout_service.gateway import checkout_signature, sign
from checkout_service.models import PaymentChannel

from conftest import make_order


def mock_client(handler, base_url="https://collaborator.test", **kwargs):
    return httpx.Client(transport=httpx.MockTransport(handler), base_url=base_url, **kwargs)


class TestRazorpayGateway:
    def test_fetch_transaction(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={
                "id": "pay_1", "amount": 76000, "currency": "INR", "status": "captured", "method": "upi",
            })

        gateway = RazorpayGateway(key_secret="s3cret", client=mock_client(handler))
        txn = gateway.fetch_transaction("pay_1")

        assert seen == ["/v1/payments/pay_1"]
        assert txn.is_captured
        assert txn.captured_amount_minor == 76000
        assert txn.method == "upi"

    def test_server_error_raised(self):
        gateway = RazorpayGateway(client=mock_client(lambda request: httpx.Response(502)))

        with pytest.raises(httpx.HTTPStatusError):
            gateway.fetch_transaction("pay_1")

    def test_timeout_raised(self):
        def handler(request):
            raise httpx.ReadTimeout("slow gateway", request=request)

        gateway = RazorpayGateway(client=mock_client(handler))

        with pytest.raises(httpx.TimeoutException):
            gateway.fetch_transaction("pay_1")

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>gateway maintenance</html>"),
        httpx.Response(200, json={"id": "pay_1", "status": "captured", "amount": None}),
        httpx.Response(200, json=["pay_1"]),
    ])
    def test_malformed_body_raised_as_value_error(self, response):
        gateway = RazorpayGateway(client=mock_client(lambda request: response))

        with pytest.raises(ValueError):
            gateway.fetch_transaction("pay_1")

    def test_signature_verification(self):
        gateway = RazorpayGateway(key_secret="s3cret", client=mock_client(lambda r: httpx.Response(200)))

        assert gateway.verify_signature("order_1", "pay_1", checkout_signature("order_1", "pay_1", "s3cret"))
        assert not gateway.verify_signature("order_1", "pay_1", checkout_signature("order_1", "pay_2", "s3cret"))

    def test_missing_secret_refuses_everything(self):
        gateway = RazorpayGateway(key_secret="", webhook_secret="", client=mock_client(lambda r: httpx.Response(200)))

        assert not gateway.verify_signature("order_1", "pay_1", checkout_signature("order_1", "pay_1", ""))
        assert not gateway.verify_webhook_signature(b"{}", sign(b"{}", ""))


class TestNotificationClients:
    def test_email_adds_sender(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"messageId": "m-1"})

        client = EmailClient(sender="orders@shop.test", client=mock_client(handler))
        result = client.send({"to": "asha@example.com", "subject": "Hi", "html": "<p>Hi</p>"})

        assert result == {"messageId": "m-1"}
        assert bodies[0]["sender"] == "orders@shop.test"

    def test_sms_error_raised(self):
        client = SmsClient(client=mock_client(lambda request: httpx.Response(429)))

        with pytest.raises(httpx.HTTPStatusError):
            client.send({"to": "+919800000001", "message": "hello"})

    def test_telegram_posts_to_bot_chat(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        client = TelegramClient(bot_token="123:abc", chat_id="-100", client=mock_client(handler))
        client.send({"text": "New order"})

        path, body = seen[0]
        assert path == "/bot123:abc/sendMessage"
        assert body == {"chat_id": "-100", "text": "New order", "parse_mode": "HTML"}


class TestInvoiceClient:
    def test_invoice_number_returned(self, customer):
        headers = []

        def handler(request):
            headers.append(request.headers["Idempotency-Key"])
            return httpx.Response(201, json={"invoiceNumber": "INV-2026-0001"})

        client = InvoiceClient(client=mock_client(handler))

        assert client.create_from_order(make_order("ORD-1", customer)) == "INV-2026-0001"
        assert headers == ["invoice-ORD-1"]


class FakeChannel:
    def __init__(self):
        self.published = []

    def queue_declare(self, queue, durable=False):
        self.queue = queue

    def basic_publish(self, exchange, routing_key, body, properties=None):
        self.published.append((routing_key, json.loads(body), properties))


class FakeConnection:
    def __init__(self, params):
        self.params = params
        self.is_closed = False
        self.is_open = True
        self._channel = FakeChannel()

    def channel(self):
        return self._channel

    def close(self):
        self.is_closed, self.is_open = True, False


class TestShipmentClient:
    def test_instruction_published_persistently(self, monkeypatch, customer):
        connections = []

        def connect(params):
            connections.append(FakeConnection(params))
            return connections[-1]

        monkeypatch.setattr(clients.pika, "BlockingConnection", connect)
        client = ShipmentClient(host="mq.test", queue="shipments")

        instruction_id = client.create_from_order(make_order("ORD-1", customer, channel=PaymentChannel.COD))
        client.create_from_order(make_order("ORD-2", customer))

        assert len(connections) == 1
        routing_key, message, properties = connections[0].channel().published[0]
        assert routing_key == "shipments"
        assert message["instructionId"] == instruction_id
        assert message["orderId"] == "ORD-1"
        assert message["codAmount"] == "500"
        assert properties.delivery_mode == 2

    def test_connection_failure_raised(self, monkeypatch, customer):
        def refuse(params):
            raise pika.exceptions.AMQPConnectionError("refused")

        monkeypatch.setattr(clients.pika, "BlockingConnection", refuse)

        with pytest.raises(pika.exceptions.AMQPConnectionError):
            ShipmentClient(host="mq.test").create_from_order(make_order("ORD-1", customer))

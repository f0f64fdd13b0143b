"""
mock_fulfillment.py — Mock Implementation of the Fulfilment Partner

This module simulates the warehouse/courier partner that receives shipment
instructions from the checkout service (via RabbitMQ) and publishes status
updates back to it.

Purpose:
    • Simulate asynchronous fulfilment (pack, ship, deliver)
    • Exercise the order lifecycle end to end without a real courier
    • Provide realistic timing and message patterns for local runs

Communication Channels:
    - Input Queue:  'fulfillment.shipments.new'   ← Receives shipment instructions
    - Output Queue: 'fulfillment.status.updates'  → Sends order status updates
"""

import pika
import time
import json
import threading
import os
import logging
import uuid

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "storefront")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "storefront")
INSTRUCTION_QUEUE = os.environ.get("SHIPMENT_QUEUE", "fulfillment.shipments.new")
STATUS_QUEUE = os.environ.get("SHIPMENT_STATUS_QUEUE", "fulfillment.status.updates")

COURIER = "Delhivery"


# Connection Utilities
def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Returns:
        pika.BlockingConnection: Active connection to the RabbitMQ broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
    )


def _publish(channel, order_id: str, status: str, **extra):
    message = {"orderId": order_id, "status": status,
               "updateTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), **extra}
    channel.basic_publish(exchange='', routing_key=STATUS_QUEUE, body=json.dumps(message),
                          properties=pika.BasicProperties(delivery_mode=2))
    logging.info(f"[FULFILMENT] Status sent: {status} for {order_id}")


def send_status_updates(order_id: str):
    """
    Simulates packing, shipping and delivery of one order and publishes a
    status message after each stage:
        1. ORDER_PACKED
        2. ORDER_SHIPPED (with courier and tracking number)
        3. ORDER_DELIVERED

    Args:
        order_id (str): Identifier of the order being fulfilled.
    """
    try:
        connection = get_mq_connection()
        channel = connection.channel()
        channel.queue_declare(queue=STATUS_QUEUE, durable=True)

        logging.info(f"[FULFILMENT] Processing order {order_id}")

        time.sleep(3)  # packing
        _publish(channel, order_id, "ORDER_PACKED")

        time.sleep(3)  # handover to courier
        tracking_number = f"DLV{uuid.uuid4().hex[:10].upper()}"
        _publish(channel, order_id, "ORDER_SHIPPED", trackingNumber=tracking_number, courier=COURIER)

        time.sleep(5)  # in transit
        _publish(channel, order_id, "ORDER_DELIVERED")

        connection.close()
    except pika.exceptions.AMQPError as e:
        logging.error(f"[FULFILMENT] Error in status update thread for {order_id}: {e}")


def on_instruction_received(ch, method, properties, body):
    """
    Callback for new messages on the shipment instruction queue.

    Parses the instruction, starts the fulfilment simulation in a separate
    thread and acknowledges the message. Malformed messages are rejected
    without requeue (dead-lettered if a DLX is configured).
    """
    try:
        data = json.loads(body)
        order_id = data["orderId"]
    except (json.JSONDecodeError, KeyError) as e:
        logging.error(f"[FULFILMENT] Malformed instruction: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    logging.info(f"[FULFILMENT] Shipment instruction {data.get('instructionId')} for order {order_id} received.")
    # Simulate in a new thread so the consumer is not blocked.
    threading.Thread(target=send_status_updates, args=(order_id,), daemon=True).start()
    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
    Starts the mock fulfilment consumer loop. Reconnects every 5 seconds if
    the broker is unavailable; stops on Ctrl+C.
    """
    logging.info("Mock fulfilment service (MQ) starting...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=INSTRUCTION_QUEUE, durable=True)

            logging.info("[FULFILMENT] Waiting for shipment instructions.")
            channel.basic_consume(queue=INSTRUCTION_QUEUE, on_message_callback=on_instruction_received)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ connection failed, retrying in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()

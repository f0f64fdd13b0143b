"""
mock_payment_service.py — Mock Implementation of the Payment Gateway (REST API)

This module provides a simulated Razorpay-compatible payment gateway for
running the checkout service locally. It exposes a FastAPI application that
answers payment lookups the way the real gateway does.

Simulation Scenarios (selected by payment id prefix):
    • pay_failed_...   → payment status "failed"
    • pay_short_...    → captured, but 500 paise less than the id announces
    • pay_timeout_...  → answers after 10 seconds (client read timeout)
    • anything else    → captured

The captured amount in paise is taken from a trailing ``_<paise>`` segment of
the id (``pay_abc_80000`` → ₹800.00); ids without one capture 100000 paise.

Endpoints:
    GET /v1/payments/{payment_id} — Returns the payment entity.

Port:
    Default: 8001 (HTTP)
"""

from fastapi import FastAPI
import logging
import time

app = FastAPI(title="Mock Payment Gateway")
logging.basicConfig(level=logging.INFO)

DEFAULT_AMOUNT = 100000
SHORT_BY = 500


def amount_from_id(payment_id: str) -> int:
    """
    Reads the announced amount from the last ``_``-separated segment.

    Args:
        payment_id (str): Payment id, e.g. ``pay_abc_80000``.
    Returns:
        int: Amount in paise, or ``DEFAULT_AMOUNT`` if the id carries none.
    """
    tail = payment_id.rsplit("_", 1)[-1]
    return int(tail) if tail.isdigit() else DEFAULT_AMOUNT


@app.get("/v1/payments/{payment_id}")
def fetch_payment(payment_id: str):
    """
    Returns a payment entity for ``payment_id``.

    Returns:
        dict: ``id``, ``entity``, ``amount`` (paise), ``currency``, ``status``,
        ``method`` and ``created_at`` (epoch seconds), as the gateway does.
    """
    logging.info(f"[PG] Payment lookup for {payment_id}")
    amount = amount_from_id(payment_id)
    status = "captured"

    # Scenario simulation
    if payment_id.startswith("pay_failed_"):
        logging.warning(f"[PG] Payment {payment_id} failed.")
        status = "failed"
    elif payment_id.startswith("pay_short_"):
        logging.warning(f"[PG] Payment {payment_id} captured {SHORT_BY} paise short.")
        amount -= SHORT_BY
    elif payment_id.startswith("pay_timeout_"):
        logging.info(f"[PG] Simulating timeout for {payment_id}...")
        time.sleep(10)
        logging.error(f"[PG] Timeout lookup {payment_id} answered (too late).")

    return {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        "created_at": int(time.time()),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)

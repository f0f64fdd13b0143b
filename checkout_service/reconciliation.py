"""
reconciliation.py — Payment Reconciler

Compares what the gateway says it captured with what the server says the
order costs, and keeps the forensic trail (``payment_audits``) of every
checkout attempt.

The reconciler fails closed: a gateway that cannot be reached, a payment that
is not captured, or an amount outside the tolerance all reject the commit.
Risk scoring is advisory and only flags the audit record.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import httpx

from .config import StorefrontSettings
from .db import utcnow
from .errors import AmountMismatch, InvalidSignature, PaymentNotCaptured
from .gateway import GatewayTransaction, PaymentGateway
from .models import PaymentChannel
from .stores import AuditStore

log = logging.getLogger(__name__)

MISMATCH_REASON = "amount_mismatch"
MISMATCH_RISK_BUMP = 20


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise, rounding half-up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class RiskAssessment:
    score: int = 0
    reasons: List[str] = field(default_factory=list)
    flagged: bool = False


class PaymentReconciler:
    """
    Gateway-side checks of the commit protocol, each recording its outcome on
    the audit record identified by ``audit_id``.
    """

    def __init__(self, gateway: PaymentGateway, audits: AuditStore):
        self.gateway = gateway
        self.audits = audits

    def open_audit(self, transaction_ref: str, channel: PaymentChannel, user_id: Optional[str] = None,
                   customer_email: Optional[str] = None, client_ip: Optional[str] = None,
                   client_amount: Optional[Decimal] = None) -> int:
        """Creates the audit record before anything is asked of the gateway."""
        audit_id = self.audits.create(
            transaction_ref,
            user_id=user_id,
            customer_email=customer_email,
            client_ip=client_ip,
            payment_channel=channel.value,
            client_claimed_amount=client_amount,
        )
        log.info(f"[Txn: {transaction_ref}] Audit record {audit_id} opened.")
        return audit_id

    def check_signature(self, audit_id: int, transaction_ref: str, gateway_order_ref: str, signature: str):
        """
        Raises:
            InvalidSignature: If the checkout callback signature does not verify.
        """
        if not self.gateway.verify_signature(gateway_order_ref, transaction_ref, signature):
            log.warning(f"[Txn: {transaction_ref}] Checkout signature rejected.")
            self.audits.update(audit_id, event="signature_invalid", payment_status="failed",
                               data={"gatewayOrderRef": gateway_order_ref})
            raise InvalidSignature(f"Payment signature for {transaction_ref} did not verify.")
        self.audits.update(audit_id, event="signature_verified", signature_verified=True)

    def fetch_captured(self, audit_id: int, transaction_ref: str) -> GatewayTransaction:
        """
        Fetches the transaction and insists that it was captured.

        Raises:
            PaymentNotCaptured: If the gateway reports any other status, or
                cannot be reached or answers with a malformed body.
        """
        try:
            txn = self.gateway.fetch_transaction(transaction_ref)
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"[Txn: {transaction_ref}] Gateway query failed: {e}")
            self.audits.update(audit_id, event="gateway_unreachable", payment_status="failed",
                               data={"error": str(e)})
            raise PaymentNotCaptured(f"Could not confirm payment {transaction_ref} with the gateway.") from e

        self.audits.update(
            audit_id,
            event="gateway_fetched",
            data={"status": txn.status, "amount": txn.captured_amount_minor},
            gateway_captured_amount=txn.captured_amount_minor,
            payment_status=txn.status,
            payment_method=txn.method,
        )
        if not txn.is_captured:
            log.warning(f"[Txn: {transaction_ref}] Payment status is '{txn.status}', not captured.")
            raise PaymentNotCaptured(f"Payment {transaction_ref} is {txn.status}.")
        return txn

    def reconcile_amount(self, audit_id: int, final_amount: Decimal, txn: GatewayTransaction,
                         tolerance_minor: int) -> int:
        """
        Compares the server-computed total with the captured amount.

        Returns:
            int: The absolute difference in paise (within tolerance).
        Raises:
            AmountMismatch: If the difference exceeds ``tolerance_minor``; the
                audit record is flagged.
        """
        expected = to_minor_units(final_amount)
        difference = abs(expected - txn.captured_amount_minor)
        if difference > tolerance_minor:
            log.warning(
                f"[Txn: {txn.payment_ref}] Amount mismatch: expected {expected}, "
                f"captured {txn.captured_amount_minor} paise."
            )
            self.audits.update(
                audit_id,
                event="amount_mismatch",
                data={"expected": expected, "captured": txn.captured_amount_minor},
                server_computed_amount=final_amount,
                amount_mismatch=True,
            )
            self.audits.flag(audit_id, MISMATCH_REASON, bump=MISMATCH_RISK_BUMP)
            raise AmountMismatch(
                f"Captured {txn.captured_amount_minor} paise but the order totals {expected} paise."
            )
        self.audits.update(audit_id, event="amount_verified", server_computed_amount=final_amount,
                           data={"expected": expected, "difference": difference})
        return difference

    def assess_risk(self, audit_id: int, client_ip: Optional[str], email: Optional[str],
                    settings: StorefrontSettings, now: Optional[datetime] = None) -> RiskAssessment:
        """
        Scores velocity signals and flags the record when the score reaches the
        threshold. Never raises a checkout error.
        """
        now = now or utcnow()
        assessment = RiskAssessment()
        if client_ip:
            day_ago = now - timedelta(hours=24)
            if self.audits.count_attempts_by_ip(client_ip, day_ago, exclude_id=audit_id) > 10:
                assessment.score += 40
                assessment.reasons.append("high_ip_velocity")
            if self.audits.count_failed_by_ip(client_ip, day_ago, exclude_id=audit_id) > 3:
                assessment.score += 20
                assessment.reasons.append("repeated_ip_failures")
        if email:
            week_ago = now - timedelta(days=7)
            attempts = self.audits.count_attempts_by_email(email, week_ago, exclude_id=audit_id)
            if attempts > 5:
                assessment.score += 30
                assessment.reasons.append("high_email_velocity")
            elif attempts > 2:
                assessment.score += 15
                assessment.reasons.append("elevated_email_velocity")

        assessment.score = min(assessment.score, 100)
        self.audits.update(audit_id, event="risk_assessed", risk_score=assessment.score,
                           data={"score": assessment.score, "reasons": assessment.reasons})
        if assessment.score >= settings.risk_flag_threshold:
            assessment.flagged = True
            for reason in assessment.reasons:
                self.audits.flag(audit_id, reason)
            log.warning(f"[Audit: {audit_id}] Flagged for review (risk {assessment.score}).")
        return assessment

    def record_cash_on_delivery(self, audit_id: int):
        self.audits.update(audit_id, event="cod_no_capture", payment_status="pending")

    def attach_order(self, audit_id: int, order_id: str):
        self.audits.update(audit_id, event="order_created", order_ref=order_id, data={"orderId": order_id})

    def record_rejection(self, audit_id: int, error: Exception):
        self.audits.update(audit_id, event="checkout_rejected",
                           data={"error": type(error).__name__, "message": str(error)})

    def record_webhook(self, payment_ref: str, event: str, payload: dict) -> int:
        """
        Appends a webhook event to every audit record of the payment.

        Returns:
            int: Number of audit records updated.
        """
        records = self.audits.find_by_transaction_ref(payment_ref)
        if not records:
            log.warning(f"[Txn: {payment_ref}] Webhook '{event}' for unknown payment.")
        for record in records:
            self.audits.update(record.id, event=f"webhook_{event}", webhook_received=True, data=payload)
        return len(records)

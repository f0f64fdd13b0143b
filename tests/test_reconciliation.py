from datetime import timedelta
from decimal import Decimal

import pytest

from checkout_service.db import utcnow
from checkout_service.errors import AmountMismatch
from checkout_service.gateway import GatewayTransaction
from checkout_service.models import PaymentChannel
from checkout_service.reconciliation import PaymentReconciler, to_minor_units


@pytest.fixture
def reconciler(gateway, audits):
    return PaymentReconciler(gateway, audits)


class TestMinorUnits:
    def test_rupees_to_paise(self):
        assert to_minor_units(Decimal("760")) == 76000
        assert to_minor_units(Decimal("845.5")) == 84550

    def test_sub_paise_rounds_half_up(self):
        assert to_minor_units(Decimal("10.005")) == 1001


class TestReconcileAmount:
    def test_exact_match(self, reconciler):
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD)
        txn = GatewayTransaction(payment_ref="pay_1", status="captured", captured_amount_minor=76000)

        assert reconciler.reconcile_amount(audit_id, Decimal("760"), txn, tolerance_minor=100) == 0

    def test_tolerance_boundary_is_inclusive(self, reconciler):
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD)
        txn = GatewayTransaction(payment_ref="pay_1", status="captured", captured_amount_minor=76100)

        assert reconciler.reconcile_amount(audit_id, Decimal("760"), txn, tolerance_minor=100) == 100

    def test_overcapture_is_also_a_mismatch(self, reconciler, audits):
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD)
        txn = GatewayTransaction(payment_ref="pay_1", status="captured", captured_amount_minor=90000)

        with pytest.raises(AmountMismatch):
            reconciler.reconcile_amount(audit_id, Decimal("760"), txn, tolerance_minor=100)
        assert audits.get(audit_id).amount_mismatch is True


class TestRiskAssessment:
    def test_failed_attempts_from_ip_score(self, reconciler, audits, settings):
        now = utcnow()
        for i in range(4):
            audits.create(f"old_{i}", client_ip="10.1.1.1", payment_status="failed",
                          created_at=now - timedelta(hours=2))
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD, client_ip="10.1.1.1")

        risk = reconciler.assess_risk(audit_id, "10.1.1.1", None, settings, now=now)

        assert risk.score == 20
        assert risk.reasons == ["repeated_ip_failures"]
        assert risk.flagged is False

    def test_old_attempts_do_not_count(self, reconciler, audits, settings):
        now = utcnow()
        for i in range(12):
            audits.create(f"old_{i}", client_ip="10.1.1.1", created_at=now - timedelta(days=2))
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD, client_ip="10.1.1.1")

        assert reconciler.assess_risk(audit_id, "10.1.1.1", None, settings, now=now).score == 0

    def test_moderate_email_velocity(self, reconciler, audits, settings):
        now = utcnow()
        for i in range(3):
            audits.create(f"old_{i}", customer_email="asha@example.com", created_at=now - timedelta(days=1))
        audit_id = reconciler.open_audit("pay_1", PaymentChannel.CARD, customer_email="asha@example.com")

        risk = reconciler.assess_risk(audit_id, None, "asha@example.com", settings, now=now)

        assert risk.score == 15


class TestWebhooks:
    def test_webhook_appended_to_every_attempt(self, reconciler, audits):
        first = reconciler.open_audit("pay_1", PaymentChannel.CARD)
        second = reconciler.open_audit("pay_1", PaymentChannel.CARD)

        updated = reconciler.record_webhook("pay_1", "payment.captured", {"status": "captured"})

        assert updated == 2
        for audit_id in (first, second):
            record = audits.get(audit_id)
            assert record.webhook_received is True
            assert record.events[-1].event == "webhook_payment.captured"

    def test_webhook_for_unknown_payment(self, reconciler):
        assert reconciler.record_webhook("pay_ghost", "payment.failed", {}) == 0

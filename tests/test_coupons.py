from datetime import timedelta
from decimal import Decimal

import pytest

from checkout_service.coupons import CouponValidator, check_coupon
from checkout_service.errors import CouponInvalid, CouponInvalidReason
from checkout_service.models import CustomerInfo, OrderStatus

from conftest import NOW, make_coupon, make_order


def reason_of(excinfo):
    return excinfo.value.reason


class TestCheckCoupon:
    def test_valid_coupon_passes(self):
        coupon = make_coupon()

        assert check_coupon(coupon, Decimal("1000"), NOW) is coupon

    def test_unknown_code(self):
        with pytest.raises(CouponInvalid) as exc:
            check_coupon(None, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.NOT_FOUND

    def test_inactive_counts_as_not_found(self):
        with pytest.raises(CouponInvalid) as exc:
            check_coupon(make_coupon(is_active=False), Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.NOT_FOUND

    def test_expired(self):
        coupon = make_coupon(valid_until=NOW - timedelta(seconds=1))

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.EXPIRED

    def test_not_yet_valid(self):
        coupon = make_coupon(valid_from=NOW + timedelta(days=1))

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.EXPIRED

    def test_usage_exhausted(self):
        coupon = make_coupon(usage_limit=5, usage_count=5)

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.USAGE_EXHAUSTED

    def test_below_minimum(self):
        coupon = make_coupon(minimum_purchase=Decimal("1500"))

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.BELOW_MINIMUM

    def test_first_time_only_with_prior_orders(self):
        coupon = make_coupon(first_time_only=True)

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW, prior_orders=lambda: 1)
        assert reason_of(exc) is CouponInvalidReason.FIRST_TIME_ONLY

    def test_user_limit_reached(self):
        coupon = make_coupon(user_limit=1)

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW, prior_orders=lambda: 3, prior_uses=lambda: 1)
        assert reason_of(exc) is CouponInvalidReason.USER_LIMIT_REACHED

    def test_checks_run_in_order(self):
        coupon = make_coupon(valid_until=NOW - timedelta(days=1), minimum_purchase=Decimal("5000"))

        with pytest.raises(CouponInvalid) as exc:
            check_coupon(coupon, Decimal("1000"), NOW)
        assert reason_of(exc) is CouponInvalidReason.EXPIRED

    def test_customer_checks_skipped_for_anonymous_preview(self):
        coupon = make_coupon(first_time_only=True, user_limit=1)

        assert check_coupon(coupon, Decimal("1000"), NOW) is coupon


class TestCouponValidator:
    @pytest.fixture
    def validator(self, coupons, orders):
        return CouponValidator(coupons, orders)

    def test_lookup_is_case_insensitive(self, validator, coupons, customer):
        coupons.save(make_coupon(code="WELCOME"))

        assert validator.validate(" welcome ", Decimal("1000"), customer, NOW).code == "WELCOME"

    def test_first_time_accepted_when_only_prior_order_was_cancelled(self, validator, coupons, orders, customer):
        coupons.save(make_coupon(code="FIRST", first_time_only=True))
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.CANCELLED))

        assert validator.validate("FIRST", Decimal("1000"), customer, NOW).code == "FIRST"

    def test_first_time_rejected_with_live_prior_order(self, validator, coupons, orders, customer):
        coupons.save(make_coupon(code="FIRST", first_time_only=True))
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.DELIVERED))

        with pytest.raises(CouponInvalid) as exc:
            validator.validate("FIRST", Decimal("1000"), customer, NOW)
        assert reason_of(exc) is CouponInvalidReason.FIRST_TIME_ONLY

    def test_user_limit_ignores_cancelled_orders(self, validator, coupons, orders, customer):
        coupons.save(make_coupon(code="ONCE", user_limit=1))
        orders.insert(make_order("ORD-1", customer, status=OrderStatus.CANCELLED, coupon_code="ONCE"))

        assert validator.validate("ONCE", Decimal("1000"), customer, NOW).code == "ONCE"

        orders.insert(make_order("ORD-2", customer, status=OrderStatus.SHIPPED, coupon_code="ONCE"))
        with pytest.raises(CouponInvalid) as exc:
            validator.validate("ONCE", Decimal("1000"), customer, NOW)
        assert reason_of(exc) is CouponInvalidReason.USER_LIMIT_REACHED

    def test_guest_history_keyed_by_email(self, validator, coupons, orders):
        coupons.save(make_coupon(code="FIRST", first_time_only=True))
        guest = CustomerInfo(email="Guest@Example.com", name="Guest")
        orders.insert(make_order("ORD-1", guest))

        same_guest = CustomerInfo(email="guest@example.com")
        with pytest.raises(CouponInvalid):
            validator.validate("FIRST", Decimal("1000"), same_guest, NOW)


class TestRedemptionTracking:
    def test_redemption_recorded_once_per_order(self, coupons, customer):
        coupons.save(make_coupon(code="FLAT100"))

        assert coupons.record_redemption("FLAT100", "ORD-1", customer.user_id, customer.email) is True
        assert coupons.record_redemption("flat100", "ORD-1", customer.user_id, customer.email) is False

        coupon = coupons.get("FLAT100")
        assert coupon.usage_count == 1
        assert [u.order_id for u in coupon.used_by] == ["ORD-1"]

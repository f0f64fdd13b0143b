from decimal import Decimal

import pytest

from checkout_service.errors import ProductUnavailable
from checkout_service.models import CartItem, Customization, DesignSide
from checkout_service.pricing import PricingResolver

from conftest import three_item_cart


@pytest.fixture
def resolver(catalog):
    return PricingResolver(catalog)


class TestStandardItems:
    def test_catalog_price_replaces_client_price(self, resolver, settings):
        priced = resolver.resolve(three_item_cart(), settings)

        classic = priced.items[0]
        assert classic.unit_price == Decimal("400")
        assert classic.line_total == Decimal("800")
        assert priced.subtotal == Decimal("1000")
        assert priced.item_count == 3

    def test_name_comes_from_catalog(self, resolver, settings):
        cart = [CartItem(product_ref="tee-classic", name="Free Tee", quantity=1)]

        priced = resolver.resolve(cart, settings)

        assert priced.items[0].name == "Classic Tee"

    def test_unknown_product_rejected(self, resolver, settings):
        cart = [CartItem(product_ref="tee-ghost", quantity=1)]

        with pytest.raises(ProductUnavailable):
            resolver.resolve(cart, settings)

    def test_soft_deleted_product_rejected(self, resolver, settings):
        cart = [CartItem(product_ref="tee-classic", quantity=1), CartItem(product_ref="tee-retired", quantity=1)]

        with pytest.raises(ProductUnavailable):
            resolver.resolve(cart, settings)

    def test_missing_product_ref_rejected(self, resolver, settings):
        with pytest.raises(ProductUnavailable):
            resolver.resolve([CartItem(quantity=1)], settings)


class TestCustomItems:
    def test_base_price_without_designs(self, resolver, settings):
        cart = [CartItem(is_custom=True, quantity=1, price=Decimal("10"))]

        priced = resolver.resolve(cart, settings)

        assert priced.items[0].unit_price == Decimal("499")
        assert priced.items[0].name == "Custom T-Shirt"

    def test_catalog_design_priced_per_side(self, resolver, settings):
        customization = Customization(
            front_design=DesignSide(design_id="dsg-sunset"),
            back_design=DesignSide(design_id="dsg-sunset"),
        )
        cart = [CartItem(is_custom=True, quantity=2, customization=customization)]

        priced = resolver.resolve(cart, settings)

        assert priced.items[0].unit_price == Decimal("899")
        assert priced.subtotal == Decimal("1798")

    def test_unresolvable_design_uses_fallback_price(self, resolver, settings):
        customization = Customization(
            front_design=DesignSide(design_id="custom-design", price=Decimal("0")),
            back_design=DesignSide(design_id="dsg-archived"),
        )
        cart = [CartItem(is_custom=True, quantity=1, customization=customization)]

        priced = resolver.resolve(cart, settings)

        assert priced.items[0].unit_price == Decimal("499") + 2 * settings.design_fallback_price

    def test_side_without_design_id_uses_fallback_price(self, resolver, settings):
        customization = Customization(front_design=DesignSide(design_image="https://cdn.test/upload.png"))
        cart = [CartItem(is_custom=True, quantity=1, customization=customization)]

        priced = resolver.resolve(cart, settings)

        assert priced.items[0].unit_price == Decimal("499") + settings.design_fallback_price

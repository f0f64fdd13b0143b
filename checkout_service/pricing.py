"""
pricing.py — Pricing Resolver

The single place where client-asserted prices are discarded. Every cart line is
repriced from the catalog:

    • Standard items: the catalog price of ``product_ref``. Missing or
      soft-deleted products reject the whole cart with ``ProductUnavailable``.
    • Custom items: ``custom_base_price`` plus, per printed side, the catalog
      price of the referenced design, or ``design_fallback_price`` when the
      design does not resolve (placeholder id, unknown or inactive design).

Read-only; no side effects.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .config import StorefrontSettings
from .errors import ProductUnavailable
from .models import CartItem, ResolvedLineItem
from .stores import CatalogStore

log = logging.getLogger(__name__)

CUSTOM_ITEM_NAME = "Custom T-Shirt"


@dataclass(frozen=True)
class PricedCart:
    items: List[ResolvedLineItem]
    subtotal: Decimal

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class PricingResolver:
    def __init__(self, catalog: CatalogStore):
        self.catalog = catalog

    def resolve(self, cart: List[CartItem], settings: StorefrontSettings) -> PricedCart:
        """
        Reprices a cart.

        Args:
            cart (list[CartItem]): Raw client cart lines.
            settings (StorefrontSettings): Supplies the custom-item price policy.

        Returns:
            PricedCart: Resolved line items and ``subtotal = Σ line_total``.

        Raises:
            ProductUnavailable: If a standard line references no product, an
                unknown product or a soft-deleted one.
        """
        resolved = [self._resolve_item(item, settings) for item in cart]
        subtotal = sum((item.line_total for item in resolved), Decimal("0"))
        return PricedCart(items=resolved, subtotal=subtotal)

    def _resolve_item(self, item: CartItem, settings: StorefrontSettings) -> ResolvedLineItem:
        if item.is_custom:
            unit_price = self.custom_unit_price(item, settings)
            name = item.name or CUSTOM_ITEM_NAME
            product_ref = None
        else:
            if not item.product_ref:
                raise ProductUnavailable("Cart item has no product reference.")
            product = self.catalog.get_product(item.product_ref)
            if product is None or product.is_deleted:
                raise ProductUnavailable(f"Product {item.product_ref} is no longer available.")
            unit_price = Decimal(product.price)
            name = product.name
            product_ref = product.id

        if item.price is not None and Decimal(item.price) != unit_price:
            log.info(f"Client price {item.price} for '{name}' replaced by server price {unit_price}.")

        return ResolvedLineItem(
            product_ref=product_ref,
            name=name,
            quantity=item.quantity,
            size=item.size,
            unit_price=unit_price,
            line_total=unit_price * item.quantity,
            is_custom=item.is_custom,
            customization=item.customization,
            color=item.color,
        )

    def custom_unit_price(self, item: CartItem, settings: StorefrontSettings) -> Decimal:
        price = settings.custom_base_price
        if item.customization is None:
            return price
        for side, design in item.customization.sides():
            price += self._design_price(side, design.design_id, settings)
        return price

    def _design_price(self, side: str, design_id: Optional[str], settings: StorefrontSettings) -> Decimal:
        if design_id:
            design = self.catalog.get_design(design_id)
            if design is not None and design.is_active:
                return Decimal(design.price)
        log.debug(f"Design '{design_id}' ({side}) not in catalog; using fallback price.")
        return settings.design_fallback_price

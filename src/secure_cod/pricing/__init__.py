"""Discount resolution and pricing."""

from .discounts import DiscountResolver, price_order

__all__ = ["DiscountResolver", "price_order"]

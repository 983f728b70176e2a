"""Discount rule resolution and checkout price computation."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Optional

from ..domain import DiscountRule, PaymentMethod
from ..errors import ValidationError
from ..utils.logging import get_logger
from ..utils.money import TWO_PLACES, to_amount

logger = get_logger(__name__)

LINK_RULE_ID = "link"


class DiscountResolver:
    """Pick the single discount rule that applies to a product.

    Precedence, highest first:
    1. a discount embedded in the checkout link (unconditional)
    2. ``product_<productId>``
    3. ``vendor_<vendorName>``
    4. ``collection_<collectionName>``
    """

    def resolve(
        self,
        product_id: Optional[str],
        vendor_name: Optional[str],
        collection_name: Optional[str],
        rules: Iterable[DiscountRule],
        link_discount: Any = None,
    ) -> Optional[DiscountRule]:
        if link_discount not in (None, ""):
            percent = self._percent(link_discount)
            logger.debug(f"Link discount {percent}% overrides stored rules")
            return DiscountRule(id=LINK_RULE_ID, discount_percent=percent, type=LINK_RULE_ID, name="link")

        by_id = {rule.id: rule for rule in rules}
        candidates = []
        if product_id:
            candidates.append(f"product_{product_id}")
        if vendor_name:
            candidates.append(f"vendor_{vendor_name}")
        if collection_name:
            candidates.append(f"collection_{collection_name}")

        for rule_id in candidates:
            rule = by_id.get(rule_id)
            if rule is not None:
                return rule
        return None

    @staticmethod
    def _percent(value: Any) -> Decimal:
        percent = to_amount(value, field="discount")
        if percent < 0 or percent > 100:
            raise ValidationError(f"discount must be between 0 and 100, got {value!r}")
        return percent


def price_order(
    unit_price: Any,
    quantity: int,
    payment_method: str,
    rule: Optional[DiscountRule] = None,
) -> Dict[str, Any]:
    """Apply ``rule`` to ``unit_price * quantity``.

    Only Secure Charge on Delivery earns a discount; plain cash on delivery
    and prepaid orders pay the original price. All three prices are returned
    so the order record keeps them for audit.
    """
    if int(quantity) <= 0:
        raise ValidationError(f"quantity must be positive, got {quantity!r}")
    original = (to_amount(unit_price, field="unitPrice") * int(quantity)).quantize(TWO_PLACES)

    applied = rule if rule is not None and payment_method == PaymentMethod.SECURE_COD else None
    if applied is None:
        total = original
    else:
        reduction = (original * applied.discount_percent / Decimal(100)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        total = original - reduction

    return {
        "originalPrice": original,
        "totalPrice": total,
        "discountAmount": original - total,
        "discountPercentage": applied.discount_percent if applied else None,
        "discountRuleId": applied.id if applied else None,
    }

"""Shakti loyalty card issuance."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from ..domain import LoyaltyRecord, utcnow
from ..reconciliation.repository import OrderRecordStore
from ..utils.logging import get_logger
from ..utils.money import phone_key, sanitize_phone_number

logger = get_logger(__name__)


def add_years(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return start.replace(year=start.year + years, day=28)


def new_card_number() -> str:
    return f"SHAKTI-{uuid.uuid4().hex[:4].upper()}-{uuid.uuid4().hex[:4].upper()}"


class LoyaltyIssuer:
    """Create or fetch the single loyalty card for a customer phone number."""

    def __init__(
        self,
        store: OrderRecordStore,
        start_points: int = 100,
        validity_years: int = 2,
        default_seller_id: str = "snazzify",
        default_seller_name: str = "Snazzify",
    ) -> None:
        self.store = store
        self.start_points = start_points
        self.validity_years = validity_years
        self.default_seller_id = default_seller_id
        self.default_seller_name = default_seller_name

    def get_or_create(self, order: Dict[str, Any], today: Optional[date] = None) -> Optional[LoyaltyRecord]:
        phone = order.get("customerPhone")
        key = phone_key(phone or "")
        if not key:
            logger.info(f"Order {order.get('businessOrderCode')} has no phone number; no loyalty card issued")
            return None

        existing = self.store.find_loyalty(key)
        if existing is not None:
            return existing

        issued = today or utcnow().date()
        card = LoyaltyRecord(
            card_number=new_card_number(),
            phone_key=key,
            customer_phone=sanitize_phone_number(phone),
            customer_name=order.get("customerName", ""),
            customer_email=order.get("customerEmail"),
            customer_address=order.get("customerAddress"),
            points=self.start_points,
            cashback=Decimal("0"),
            valid_from=issued,
            valid_thru=add_years(issued, self.validity_years),
            seller_id=order.get("sellerId") or self.default_seller_id,
            seller_name=order.get("sellerName") or self.default_seller_name,
        )
        stored = self.store.add_loyalty(card)
        if stored is card:
            logger.info(f"Issued loyalty card {card.card_number} for order {order.get('businessOrderCode')}")
        return stored

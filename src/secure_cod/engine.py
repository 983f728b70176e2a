"""Collaborator-facing facade over the record store, reconciler and state machine."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .domain import DiscountRule, utcnow
from .errors import EngineError, ValidationError
from .payments.gateway import Gateway
from .payments.locks import OrderLocks
from .payments.state_machine import PaymentStateMachine
from .pricing.discounts import DiscountResolver, price_order
from .reconciliation.engine import LEADS_VIEW, ORDERS_VIEW, OrderReconciler, in_view
from .reconciliation.repository import OrderRecordStore
from .rewards.loyalty import LoyaltyIssuer
from .utils.config import Config
from .utils.logging import get_logger
from .utils.money import to_amount

logger = get_logger(__name__)

Record = Dict[str, Any]

CANCELLATION_SECRET_SETTING = "cancellationSecret"


class OrderEngine:
    """Everything dashboards, checkout and webhooks need from the engine.

    Reads reconcile on demand and never write. Writes go through the state
    machine, which serializes them per business order code.
    """

    def __init__(
        self,
        store: OrderRecordStore,
        gateway: Optional[Gateway],
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        config = config or Config()
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.resolver = DiscountResolver()
        self.reconciler = OrderReconciler(self._cancellation_secret(store, config), self.resolver)
        self.loyalty = LoyaltyIssuer(
            store,
            start_points=config.get("loyalty_start_points"),
            validity_years=config.get("loyalty_validity_years"),
            default_seller_id=config.get("default_seller_id"),
            default_seller_name=config.get("default_seller_name"),
        )
        self.payments = PaymentStateMachine(
            store,
            gateway,
            reconciler=self.reconciler,
            locks=OrderLocks(),
            loyalty=self.loyalty,
            clock=clock,
            self_cancel_window=timedelta(hours=config.get("self_cancel_window_hours")),
        )

    @staticmethod
    def _cancellation_secret(store: OrderRecordStore, config: Config) -> str:
        """Key for cancellation IDs.

        Without CANCELLATION_SECRET a random key is generated once and kept in
        the store. Every engine over the same records reads that key back.
        """
        secret = config.get("cancellation_secret")
        if secret:
            return secret
        logger.warning("CANCELLATION_SECRET is not set; using the generated secret kept with the order records")
        return store.get_or_create_setting(CANCELLATION_SECRET_SETTING, secrets.token_hex(32))

    # Ingestion ----------------------------------------------------------

    def put_raw_order(self, record: Record) -> str:
        record = dict(record)
        record.setdefault("recordId", str(uuid.uuid4()))
        self.store.put_raw_order(record)
        return record["recordId"]

    def put_raw_lead(self, record: Record) -> str:
        record = dict(record)
        record.setdefault("recordId", str(uuid.uuid4()))
        self.store.put_raw_lead(record)
        return record["recordId"]

    def put_override(self, record_id: str, patch: Record) -> None:
        if not record_id:
            raise ValidationError("recordId is required for an override")
        self.store.put_override(record_id, {k: v for k, v in patch.items() if k != "recordId"})

    def put_discount_rule(self, rule: DiscountRule) -> None:
        self.store.put_discount_rule(rule)

    # Views --------------------------------------------------------------

    def get_unified_orders(self, source: Optional[str] = None) -> List[Record]:
        if source not in (None, ORDERS_VIEW, LEADS_VIEW):
            raise ValidationError(f"source must be '{ORDERS_VIEW}' or '{LEADS_VIEW}', got {source!r}")
        reconciler = OrderReconciler(self.reconciler.cancellation_secret, self.resolver)
        canonical = reconciler.reconcile(
            self.store.list_orders(),
            self.store.list_leads(),
            self.store.get_overrides(),
            self.store.list_discount_rules(),
        )
        if reconciler.dropped:
            logger.warning(f"{len(reconciler.dropped)} malformed record(s) skipped during reconciliation")
        return [order for order in canonical if in_view(order, source)]

    def get_order(self, business_order_code: str) -> Record:
        return self.payments.current(business_order_code)

    # Discounts ----------------------------------------------------------

    def get_discount_for_order(
        self,
        product_id: Optional[str],
        vendor_name: Optional[str],
        collection_name: Optional[str],
        link_discount: Any = None,
    ) -> Optional[DiscountRule]:
        return self.resolver.resolve(
            product_id, vendor_name, collection_name, self.store.list_discount_rules(), link_discount
        )

    def quote(
        self,
        unit_price: Any,
        quantity: int,
        payment_method: str,
        product_id: Optional[str] = None,
        vendor_name: Optional[str] = None,
        collection_name: Optional[str] = None,
        link_discount: Any = None,
    ) -> Dict[str, Any]:
        """Checkout prices for a product link, discount applied where eligible."""
        rule = self.get_discount_for_order(product_id, vendor_name, collection_name, link_discount)
        return price_order(unit_price, quantity, payment_method, rule)

    # Payments -----------------------------------------------------------

    def create_gateway_order(self, amount: Any, customer: Record) -> Dict[str, Any]:
        """Open the gateway order for the intent charge or the full authorization."""
        value = to_amount(amount)
        if value <= 0:
            raise ValidationError("Order total must be greater than zero.")
        return self._require_gateway().authorize(value, customer)

    def verify_intent(self, record: Record) -> Record:
        return self.payments.verify_intent(record)

    def transition(self, business_order_code: str, action: str, params: Optional[Dict[str, Any]] = None) -> Record:
        self._require_gateway()
        return self.payments.transition(business_order_code, action, params)

    def can_self_cancel(self, business_order_code: str) -> bool:
        return self.payments.can_self_cancel(business_order_code)

    def close(self) -> None:
        disconnect = getattr(self.store, "disconnect", None)
        if disconnect is not None:
            disconnect()

    def _require_gateway(self) -> Gateway:
        if self.gateway is None:
            raise EngineError("No payment gateway configured; set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET")
        return self.gateway

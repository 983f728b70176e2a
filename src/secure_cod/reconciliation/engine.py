"""Fold raw order, lead and override records into one canonical order per code."""

from __future__ import annotations

import hashlib
import hmac
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..domain import (
    LEAD_VIEW_STATUSES,
    CancellationStatus,
    DiscountRule,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from ..pricing.discounts import DiscountResolver
from ..utils.logging import get_logger

logger = get_logger(__name__)

Record = Dict[str, Any]

ORDERS_VIEW = "orders"
LEADS_VIEW = "leads"

# Origin collection of a record; leads fold before orders
_KIND_FIELD = "_kind"
_KIND_RANK = {LEADS_VIEW: 0, ORDERS_VIEW: 1}


def apply_override(record: Record, patch: Optional[Mapping[str, Any]]) -> Record:
    """Layer an admin override patch on top of a raw record."""
    if not patch:
        return dict(record)
    return {**record, **patch}


def fold_records(records: Sequence[Record]) -> Record:
    """Shallow-merge an ordered list of records; later records win per field."""
    merged: Record = {}
    for record in records:
        merged = {**merged, **record}
    return merged


def resolve_payment_status(members: Iterable[Record], representative_status: Any) -> Any:
    """Status precedence over a whole group, independent of fold order.

    Voided > Refunded > Fee Charged > Paid > the representative's own status.
    """
    members = list(members)
    statuses = [m.get("paymentStatus") for m in members]

    if PaymentStatus.VOIDED in statuses or any(
        m.get("cancellationStatus") == CancellationStatus.PROCESSED for m in members
    ):
        return PaymentStatus.VOIDED.value
    if PaymentStatus.REFUNDED in statuses or any(
        m.get("refundStatus") == RefundStatus.PROCESSED for m in members
    ):
        return PaymentStatus.REFUNDED.value
    if PaymentStatus.FEE_CHARGED in statuses:
        return PaymentStatus.FEE_CHARGED.value
    if PaymentStatus.PAID in statuses:
        return PaymentStatus.PAID.value
    if isinstance(representative_status, PaymentStatus):
        return representative_status.value
    return representative_status


def derive_cancellation_id(business_order_code: str, secret: str = "") -> str:
    """Stable ``CNCL-`` code for an order, keyed so it cannot be guessed from the code."""
    digest = hmac.new(secret.encode("utf-8"), business_order_code.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"CNCL-{digest[:8].upper()}"


def in_view(order: Record, source: Optional[str]) -> bool:
    status = order.get("paymentStatus")
    if status == PaymentStatus.CONVERTED:
        return False
    if source is None:
        return True
    if source == LEADS_VIEW:
        return status in LEAD_VIEW_STATUSES
    if source == ORDERS_VIEW:
        return status not in LEAD_VIEW_STATUSES
    raise ValueError(f"Unknown order view: {source!r}")


class OrderReconciler:
    """Produce the unified order view every screen and the state machine read.

    Pure with respect to its inputs: the same records, overrides and rules
    always give the same canonical orders, cancellation ids included.
    Records without ``recordId`` or ``businessOrderCode`` are dropped and
    kept on ``self.dropped`` for the caller to report.
    """

    def __init__(self, cancellation_secret: str = "", resolver: Optional[DiscountResolver] = None) -> None:
        self.cancellation_secret = cancellation_secret
        self.resolver = resolver or DiscountResolver()
        self.dropped: List[Record] = []

    def reconcile(
        self,
        raw_orders: Iterable[Record],
        raw_leads: Iterable[Record],
        overrides_by_record_id: Optional[Mapping[str, Mapping[str, Any]]] = None,
        discount_rules: Iterable[DiscountRule] = (),
    ) -> List[Record]:
        overrides_by_record_id = overrides_by_record_id or {}
        rules = list(discount_rules)
        self.dropped = []

        groups: Dict[str, List[Record]] = defaultdict(list)
        tagged = [(ORDERS_VIEW, r) for r in raw_orders] + [(LEADS_VIEW, r) for r in raw_leads]
        for kind, raw in tagged:
            record_id = raw.get("recordId")
            effective = apply_override(raw, overrides_by_record_id.get(record_id)) if record_id else dict(raw)
            code = effective.get("businessOrderCode")
            if not record_id or not code:
                logger.warning(f"Dropping malformed {kind} record (recordId={record_id!r}, businessOrderCode={code!r})")
                self.dropped.append(dict(raw))
                continue
            effective[_KIND_FIELD] = kind
            groups[str(code)].append(effective)

        canonical = [self._canonicalize(code, members, rules) for code, members in groups.items()]
        canonical.sort(key=lambda o: o["businessOrderCode"])
        canonical.sort(key=lambda o: str(o.get("date") or ""), reverse=True)
        return canonical

    def _canonicalize(self, code: str, members: List[Record], rules: List[DiscountRule]) -> Record:
        ordered = sorted(members, key=lambda r: (_KIND_RANK[r[_KIND_FIELD]], str(r["recordId"])))
        representative = fold_records(ordered)

        kind = ORDERS_VIEW if any(m[_KIND_FIELD] == ORDERS_VIEW for m in ordered) else LEADS_VIEW
        representative.pop(_KIND_FIELD, None)

        representative["paymentStatus"] = resolve_payment_status(ordered, representative.get("paymentStatus"))

        existing = next((m["cancellationId"] for m in ordered if m.get("cancellationId")), None)
        representative["cancellationId"] = existing or derive_cancellation_id(code, self.cancellation_secret)

        representative["businessOrderCode"] = code
        representative["recordIds"] = sorted(str(m["recordId"]) for m in ordered)
        representative["orderRecordIds"] = sorted(str(m["recordId"]) for m in ordered if m[_KIND_FIELD] == ORDERS_VIEW)
        representative["kind"] = kind
        representative.pop("recordId", None)

        if representative.get("discountPercentage") is None and rules:
            self._annotate_discount(representative, rules)
        return representative

    def _annotate_discount(self, order: Record, rules: List[DiscountRule]) -> None:
        """Note which stored rule covers the order; persisted prices are not touched."""
        if order.get("paymentMethod") != PaymentMethod.SECURE_COD:
            return
        rule = self.resolver.resolve(
            order.get("productId"), order.get("vendorName"), order.get("collectionName"), rules
        )
        if rule is not None:
            order["discountRuleId"] = rule.id


def reconcile(
    raw_orders: Iterable[Record],
    raw_leads: Iterable[Record],
    overrides_by_record_id: Optional[Mapping[str, Mapping[str, Any]]] = None,
    discount_rules: Iterable[DiscountRule] = (),
    cancellation_secret: str = "",
) -> List[Record]:
    return OrderReconciler(cancellation_secret).reconcile(
        raw_orders, raw_leads, overrides_by_record_id, discount_rules
    )

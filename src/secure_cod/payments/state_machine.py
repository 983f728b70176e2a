"""
Payment authorization state machine for canonical orders.

    (none) -> Intent Verified -> Authorized -> Paid
                                           -> Voided      (self within 24h, or with cancellation code)
                                           -> Fee Charged (fee captured, remainder refunded)
    Voided -> Fee Charged   (only while the hold is still in place)
    Authorized | Paid | Voided | Fee Charged -> Refunded (admin, up to what has not been returned)

Every status change follows the same protocol per business order code:
claim the order in the record store and, under the order's lock, read the
canonical order and check its status. Call the gateway with the lock
released, then re-take the lock, check the status has not moved and write
the result as override patches before dropping the claim. A failed gateway
call writes nothing.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from ..domain import (
    REQUIRED_CUSTOMER_FIELDS,
    CancellationStatus,
    PaymentAuthorizationInfo,
    PaymentStatus,
    RefundStatus,
    Source,
    parse_timestamp,
    utcnow,
)
from ..errors import ConflictError, NotFoundError, ValidationError, manual_processing_required
from ..reconciliation.engine import ORDERS_VIEW, OrderReconciler
from ..reconciliation.repository import OrderRecordStore
from ..rewards.loyalty import LoyaltyIssuer
from ..utils.logging import for_order, get_logger
from ..utils.money import format_amount, to_amount
from .cancellation import (
    SELF_CANCEL_WINDOW,
    can_self_cancel,
    check_cancellation_code,
    is_within_24_hours,
    refundable_balance,
    returned_amount,
    settle_cancellation_fee,
    validate_fee,
)
from .gateway import Gateway
from .locks import OrderLocks

logger = get_logger(__name__)

Record = Dict[str, Any]

AUTHORIZE = "authorize"
CAPTURE = "capture"
VOID_SELF = "void-self"
VOID_ADMIN = "void-admin"
CHARGE_FEE = "charge-fee"
REFUND = "refund"

ACTIONS = (AUTHORIZE, CAPTURE, VOID_SELF, VOID_ADMIN, CHARGE_FEE, REFUND)

# Fields the reconciler adds to a canonical order; never copied into raw records
_DERIVED_FIELDS = ("recordIds", "orderRecordIds", "kind", "discountRuleId")


def _status_set(*statuses: PaymentStatus) -> frozenset:
    return frozenset(s.value for s in statuses)


ALLOWED_FROM = {
    AUTHORIZE: _status_set(PaymentStatus.INTENT_VERIFIED),
    CAPTURE: _status_set(PaymentStatus.AUTHORIZED),
    VOID_SELF: _status_set(PaymentStatus.AUTHORIZED),
    VOID_ADMIN: _status_set(PaymentStatus.AUTHORIZED),
    CHARGE_FEE: _status_set(PaymentStatus.AUTHORIZED, PaymentStatus.VOIDED),
    REFUND: _status_set(
        PaymentStatus.AUTHORIZED,
        PaymentStatus.PAID,
        PaymentStatus.VOIDED,
        PaymentStatus.FEE_CHARGED,
    ),
}


@dataclass
class _Step:
    """What one transition does, split around the gateway call."""

    order: Record
    prepared: Dict[str, Any] = field(default_factory=dict)
    outcome: Dict[str, Any] = field(default_factory=dict)


class PaymentStateMachine:
    def __init__(
        self,
        store: OrderRecordStore,
        gateway: Gateway,
        reconciler: Optional[OrderReconciler] = None,
        locks: Optional[OrderLocks] = None,
        loyalty: Optional[LoyaltyIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
        self_cancel_window: timedelta = SELF_CANCEL_WINDOW,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.reconciler = reconciler or OrderReconciler()
        self.locks = locks or OrderLocks()
        self.loyalty = loyalty or LoyaltyIssuer(store)
        self.clock = clock
        self.self_cancel_window = self_cancel_window

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, business_order_code: str) -> Optional[Record]:
        orders, leads, overrides = self.store.records_for_code(business_order_code)
        canonical = self.reconciler.reconcile(orders, leads, overrides)
        return canonical[0] if canonical else None

    def current(self, business_order_code: str) -> Record:
        order = self.find(business_order_code)
        if order is None:
            raise NotFoundError(f"Order {business_order_code} not found", business_order_code=business_order_code)
        return order

    def can_self_cancel(self, business_order_code: str) -> bool:
        order = self.current(business_order_code)
        info = self.store.get_payment_authorization(business_order_code)
        return can_self_cancel(order, info, self.clock(), self.self_cancel_window)

    # ------------------------------------------------------------------
    # Intent verification: writes the lead the authorization later converts
    # ------------------------------------------------------------------

    def verify_intent(self, record: Record) -> Record:
        code = record.get("businessOrderCode")
        if not code:
            raise ValidationError("businessOrderCode is required")
        missing = [f for f in REQUIRED_CUSTOMER_FIELDS if not record.get(f)]
        if missing:
            raise ValidationError(f"Missing customer details: {', '.join(missing)}")
        if to_amount(record.get("price"), field="price") <= 0:
            raise ValidationError("Order total must be greater than zero.")

        lead = dict(record)
        lead.setdefault("recordId", str(uuid.uuid4()))
        lead.setdefault("source", Source.STOREFRONT.value)
        lead.setdefault("date", self.clock().isoformat())
        lead["paymentStatus"] = PaymentStatus.INTENT_VERIFIED.value

        with self.locks.hold(code):
            existing = self.find(code)
            if existing is not None and existing["kind"] == ORDERS_VIEW:
                raise ConflictError(
                    f"Order {code} already exists with status {existing['paymentStatus']}",
                    business_order_code=code,
                    current_status=existing["paymentStatus"],
                )
            self.store.put_raw_lead(lead)
            for_order(logger, code).info(f"Intent verified (lead {lead['recordId']})")
            return self.current(code)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, business_order_code: str, action: str, params: Optional[Dict[str, Any]] = None) -> Record:
        handlers = {
            AUTHORIZE: (self._prepare_authorize, self._execute_authorize, self._commit_authorize),
            CAPTURE: (self._prepare_capture, self._execute_capture, self._commit_capture),
            VOID_SELF: (self._prepare_void_self, self._execute_void, self._commit_void),
            VOID_ADMIN: (self._prepare_void_admin, self._execute_void, self._commit_void),
            CHARGE_FEE: (self._prepare_fee, self._execute_fee, self._commit_fee),
            REFUND: (self._prepare_refund, self._execute_refund, self._commit_refund),
        }
        if action not in handlers:
            raise ValidationError(f"Unknown action {action!r}; expected one of {', '.join(ACTIONS)}")
        prepare, execute, commit = handlers[action]
        params = params or {}
        code = business_order_code
        log = for_order(logger, code)

        with self.locks.hold(code):
            token = self._claim(code)
            try:
                order = self.current(code)
                self._require_status(order, ALLOWED_FROM[action], action)
                step = _Step(order=order, prepared=prepare(order, params))
            except BaseException:
                self._release(code, token)
                raise

        committed = None
        try:
            step.outcome = execute(step)
            with self.locks.hold(code):
                latest = self.current(code)
                if latest["paymentStatus"] != order["paymentStatus"]:
                    log.error(
                        f"Moved to {latest['paymentStatus']} while {action} was at the gateway; "
                        f"gateway result {step.outcome} not recorded"
                    )
                    raise ConflictError(
                        f"Order {code} changed from {order['paymentStatus']} to {latest['paymentStatus']} during {action}",
                        business_order_code=code,
                        current_status=latest["paymentStatus"],
                    )
                commit(latest, step)
                result = self.current(code)
                committed = result["paymentStatus"]
        finally:
            self._release(code, token, committed)

        log.info(f"{order['paymentStatus']} -> {result['paymentStatus']} ({action})")
        return result

    def _claim(self, business_order_code: str) -> str:
        # Local marker first so threads of this process never reach the store twice
        self.locks.reserve(business_order_code)
        try:
            return self.store.claim(business_order_code)
        except BaseException:
            self.locks.release(business_order_code)
            raise

    def _release(self, business_order_code: str, token: str, status: Optional[str] = None) -> None:
        try:
            self.store.release_claim(business_order_code, token, status)
        finally:
            self.locks.release(business_order_code)

    @staticmethod
    def _require_status(order: Record, allowed: Iterable[str], action: str) -> None:
        status = order.get("paymentStatus")
        if status not in allowed:
            raise ConflictError(
                f"Cannot {action} order {order['businessOrderCode']} in status {status}",
                business_order_code=order["businessOrderCode"],
                current_status=status,
            )

    def _require_authorization(self, order: Record, action: str) -> PaymentAuthorizationInfo:
        info = self.store.get_payment_authorization(order["businessOrderCode"])
        if info is None:
            raise manual_processing_required(order["businessOrderCode"], action)
        return info

    def _write_status(self, order: Record, patch: Dict[str, Any]) -> None:
        # Every member gets the patch so no stale member outranks the new status
        for record_id in order["orderRecordIds"] or order["recordIds"]:
            self.store.put_override(record_id, patch)

    # authorize ---------------------------------------------------------

    def _prepare_authorize(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("payment_id", "gateway_order_id", "signature"):
            if not params.get(key):
                raise ValidationError(f"{key} is required to authorize")
        if self.store.get_payment_authorization(order["businessOrderCode"]) is not None:
            raise ConflictError(
                f"Order {order['businessOrderCode']} is already authorized",
                business_order_code=order["businessOrderCode"],
            )
        amount = to_amount(params.get("amount", order.get("price")), field="amount")
        if amount <= 0:
            raise ValidationError("Authorized amount must be greater than zero.")
        return {**params, "amount": amount}

    def _execute_authorize(self, step: _Step) -> Dict[str, Any]:
        p = step.prepared
        self.gateway.verify_payment(p["gateway_order_id"], p["payment_id"], p["signature"])
        authorized_at = p.get("authorized_at")
        return {"authorized_at": parse_timestamp(authorized_at) if authorized_at else self.clock()}

    def _commit_authorize(self, order: Record, step: _Step) -> None:
        code = order["businessOrderCode"]
        p = step.prepared
        info = PaymentAuthorizationInfo(
            business_order_code=code,
            payment_id=p["payment_id"],
            gateway_order_id=p["gateway_order_id"],
            signature=p["signature"],
            authorized_at=step.outcome["authorized_at"],
            amount=p["amount"],
        )
        self.store.add_payment_authorization(info)

        new_order = {k: v for k, v in order.items() if k not in _DERIVED_FIELDS}
        new_order.update(
            {
                "recordId": str(uuid.uuid4()),
                "paymentStatus": PaymentStatus.AUTHORIZED.value,
                "price": format_amount(p["amount"]),
                "date": info.authorized_at.isoformat(),
            }
        )
        self.store.put_raw_order(new_order)
        for lead_id in order["recordIds"]:
            self.store.put_override(lead_id, {"paymentStatus": PaymentStatus.CONVERTED.value})

        self.loyalty.get_or_create(new_order, today=info.authorized_at.date())

    # capture -----------------------------------------------------------

    def _prepare_capture(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        info = self._require_authorization(order, CAPTURE)
        return {"info": info, "amount": to_amount(order.get("price"), field="price")}

    def _execute_capture(self, step: _Step) -> Dict[str, Any]:
        return self.gateway.capture(step.prepared["info"].payment_id, step.prepared["amount"])

    def _commit_capture(self, order: Record, step: _Step) -> None:
        self._write_status(
            order,
            {"paymentStatus": PaymentStatus.PAID.value, "captureId": step.outcome.get("transactionId")},
        )

    # void --------------------------------------------------------------

    def _prepare_void_self(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        info = self._require_authorization(order, VOID_SELF)
        if not is_within_24_hours(info.authorized_at, self.clock(), self.self_cancel_window):
            raise ValidationError(
                f"The self-service cancellation window for order {order['businessOrderCode']} has closed; "
                "contact support for a cancellation ID."
            )
        reason = params.get("reason") or "Customer cancellation within the self-service window"
        return {"info": info, "reason": reason}

    def _prepare_void_admin(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        code = params.get("code")
        check_cancellation_code(order, code)
        # Manual orders have no gateway hold to release
        info = self.store.get_payment_authorization(order["businessOrderCode"])
        reason = params.get("reason") or f"Customer cancellation with ID: {code}"
        return {"info": info, "reason": reason}

    def _execute_void(self, step: _Step) -> Dict[str, Any]:
        info = step.prepared["info"]
        if info is None:
            return {"released": Decimal("0.00")}
        result = self.gateway.refund(info.payment_id, info.amount, step.prepared["reason"])
        return {**result, "released": info.amount}

    def _commit_void(self, order: Record, step: _Step) -> None:
        self._write_status(
            order,
            {
                "paymentStatus": PaymentStatus.VOIDED.value,
                "cancellationStatus": CancellationStatus.PROCESSED.value,
                "cancellationReason": step.prepared["reason"],
                "cancellationId": order["cancellationId"],
                "releaseId": step.outcome.get("refundId"),
                "releasedAmount": format_amount(step.outcome["released"]),
            },
        )

    # charge-fee --------------------------------------------------------

    def _prepare_fee(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        info = self._require_authorization(order, CHARGE_FEE)
        if returned_amount(order, info) > 0:
            raise ConflictError(
                f"The payment hold on order {order['businessOrderCode']} has already been released; "
                "there is nothing left to charge a fee against.",
                business_order_code=order["businessOrderCode"],
                current_status=order["paymentStatus"],
            )
        total, fee = validate_fee(info.amount, params.get("amount"))
        reason = params.get("reason") or "Partial refund after cancellation fee."
        return {"info": info, "total": total, "fee": fee, "reason": reason}

    def _execute_fee(self, step: _Step) -> Dict[str, Any]:
        p = step.prepared
        settlement = settle_cancellation_fee(self.gateway, p["info"].payment_id, p["total"], p["fee"], p["reason"])
        return {"settlement": settlement}

    def _commit_fee(self, order: Record, step: _Step) -> None:
        settlement = step.outcome["settlement"]
        self._write_status(
            order,
            {
                "paymentStatus": PaymentStatus.FEE_CHARGED.value,
                "cancellationFee": format_amount(settlement.fee),
                "feeCaptureId": settlement.capture_id,
                "feeRefundAmount": format_amount(settlement.refunded),
                "feeRefundId": settlement.refund_id,
                "cancellationStatus": CancellationStatus.SETTLED.value,
                "cancellationReason": step.prepared["reason"],
            },
        )

    # refund ------------------------------------------------------------

    def _prepare_refund(self, order: Record, params: Dict[str, Any]) -> Dict[str, Any]:
        code = order["businessOrderCode"]
        info = self._require_authorization(order, REFUND)
        balance = min(refundable_balance(order, info), to_amount(order.get("price"), field="price"))
        if balance <= 0:
            raise ConflictError(
                f"Order {code} has nothing left to refund; the full authorization has been returned.",
                business_order_code=code,
                current_status=order["paymentStatus"],
            )
        requested = params.get("amount")
        if requested is None:
            requested = order.get("refundAmount") or balance
        amount = to_amount(requested, field="refundAmount")
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero.")
        if amount > balance:
            raise ValidationError(
                f"Refund amount {format_amount(amount)} exceeds the {format_amount(balance)} still refundable on order {code}."
            )
        reason = params.get("reason") or order.get("refundReason") or "Refund processed from dashboard."
        return {"info": info, "amount": amount, "reason": reason}

    def _execute_refund(self, step: _Step) -> Dict[str, Any]:
        p = step.prepared
        return self.gateway.refund(p["info"].payment_id, p["amount"], p["reason"])

    def _commit_refund(self, order: Record, step: _Step) -> None:
        patch = {
            "paymentStatus": PaymentStatus.REFUNDED.value,
            "refundStatus": RefundStatus.PROCESSED.value,
            "refundAmount": format_amount(step.prepared["amount"]),
            "refundReason": step.prepared["reason"],
            "refundId": step.outcome.get("refundId"),
        }
        if order.get("cancellationStatus") == CancellationStatus.PROCESSED:
            patch["cancellationStatus"] = CancellationStatus.SETTLED.value
        self._write_status(order, patch)

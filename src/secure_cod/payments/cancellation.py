"""Cancellation eligibility and cancellation-fee settlement."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from ..domain import PaymentAuthorizationInfo, PaymentStatus, parse_timestamp, utcnow
from ..errors import GatewayError, ValidationError
from ..utils.logging import get_logger
from ..utils.money import format_amount, to_amount
from .gateway import Gateway

logger = get_logger(__name__)

SELF_CANCEL_WINDOW = timedelta(hours=24)


def is_within_24_hours(
    authorized_at: Any,
    now: Optional[datetime] = None,
    window: timedelta = SELF_CANCEL_WINDOW,
) -> bool:
    """True iff less than ``window`` has passed since ``authorized_at``."""
    authorized = parse_timestamp(authorized_at)
    current = parse_timestamp(now) if now is not None else utcnow()
    return current - authorized < window


def can_self_cancel(
    order: Dict[str, Any],
    auth_info: Optional[PaymentAuthorizationInfo],
    now: Optional[datetime] = None,
    window: timedelta = SELF_CANCEL_WINDOW,
) -> bool:
    if order.get("paymentStatus") != PaymentStatus.AUTHORIZED or auth_info is None:
        return False
    return is_within_24_hours(auth_info.authorized_at, now, window)


def check_cancellation_code(order: Dict[str, Any], supplied_code: Any) -> None:
    """The cancellation code is the customer's authorization to cancel late."""
    expected = order.get("cancellationId")
    if not supplied_code or not expected or str(supplied_code) != str(expected):
        raise ValidationError(
            f"Cancellation ID does not match our records for order {order.get('businessOrderCode')}"
        )


@dataclass(frozen=True)
class FeeSettlement:
    fee: Decimal
    refunded: Decimal
    capture_id: Optional[str]
    refund_id: Optional[str]


def validate_fee(total_amount: Any, fee_amount: Any) -> tuple:
    total = to_amount(total_amount, field="totalAmount")
    fee = to_amount(fee_amount, field="feeAmount")
    if fee <= 0:
        raise ValidationError("Cancellation fee must be greater than zero.")
    if fee >= total:
        raise ValidationError("Cancellation fee cannot be greater than or equal to the total order amount.")
    return total, fee


def returned_amount(order: Dict[str, Any], auth_info: PaymentAuthorizationInfo) -> Decimal:
    """How much of the authorization has already gone back to the customer.

    Voids recorded by the engine carry ``releasedAmount``. A ``Voided`` order
    without it was cancelled outside the gateway flow and still holds funds.
    """
    returned = Decimal("0.00")
    for key in ("releasedAmount", "feeRefundAmount"):
        if order.get(key) not in (None, ""):
            returned += to_amount(order[key], field=key)
    return min(returned, auth_info.amount)


def refundable_balance(order: Dict[str, Any], auth_info: PaymentAuthorizationInfo) -> Decimal:
    return auth_info.amount - returned_amount(order, auth_info)


def settle_cancellation_fee(
    gateway: Gateway,
    payment_id: str,
    total_amount: Any,
    fee_amount: Any,
    reason: Optional[str] = None,
) -> FeeSettlement:
    """Capture ``fee_amount`` from the hold, then refund the remainder.

    Nothing is written here. The caller records ``Fee Charged`` only after
    this returns, so a gateway failure leaves the order untouched. If the
    refund fails after the capture went through, the GatewayError carries
    the capture id so the remainder can be refunded by hand.
    """
    total, fee = validate_fee(total_amount, fee_amount)
    remainder = total - fee

    captured = gateway.capture(payment_id, fee)
    capture_id = captured.get("transactionId")
    logger.info(f"Captured cancellation fee {format_amount(fee)} on payment {payment_id} ({capture_id})")

    try:
        refunded = gateway.refund(payment_id, remainder, reason or "Partial refund after cancellation fee.")
    except GatewayError as e:
        logger.error(
            f"Fee {format_amount(fee)} captured on payment {payment_id} ({capture_id}) "
            f"but refund of {format_amount(remainder)} failed: {e}"
        )
        raise GatewayError(
            f"Cancellation fee {format_amount(fee)} was captured ({capture_id}) but refunding the remaining "
            f"{format_amount(remainder)} failed: {e}. Refund the remainder manually.",
            operation="refund",
            capture_id=capture_id,
        ) from e

    logger.info(f"Refunded {format_amount(remainder)} on payment {payment_id} after cancellation fee")
    return FeeSettlement(fee=fee, refunded=remainder, capture_id=capture_id, refund_id=refunded.get("refundId"))

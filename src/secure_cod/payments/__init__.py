"""Payment authorization, cancellation and gateway access."""

from .gateway import Gateway, RazorpayGateway
from .locks import OrderLocks
from .cancellation import (
    FeeSettlement,
    can_self_cancel,
    check_cancellation_code,
    is_within_24_hours,
    refundable_balance,
    settle_cancellation_fee,
)
from .state_machine import ACTIONS, PaymentStateMachine

__all__ = [
    "Gateway",
    "RazorpayGateway",
    "OrderLocks",
    "FeeSettlement",
    "can_self_cancel",
    "check_cancellation_code",
    "is_within_24_hours",
    "refundable_balance",
    "settle_cancellation_fee",
    "ACTIONS",
    "PaymentStateMachine",
]

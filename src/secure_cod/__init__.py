"""
Secure COD - Order Payment Reconciliation & Authorization Engine

Merges order and lead records from independent sources into one canonical
view per business order code, and drives Secure Charge on Delivery payments
through authorization, capture, cancellation, fee settlement and refund.
"""

__version__ = "0.1.0"

from . import payments, pricing, reconciliation, rewards, utils
from .engine import OrderEngine
from .errors import ConflictError, EngineError, GatewayError, NotFoundError, ValidationError

__all__ = [
    "OrderEngine",
    "EngineError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "GatewayError",
    "payments",
    "pricing",
    "reconciliation",
    "rewards",
    "utils",
]

"""Error taxonomy surfaced by the engine to its callers."""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class ValidationError(EngineError):
    """Malformed input. Rejected before any write or gateway call."""


class NotFoundError(EngineError):
    """A required record (usually payment authorization info) is missing."""

    def __init__(self, message: str, business_order_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.business_order_code = business_order_code


class ConflictError(EngineError):
    """The order changed underneath the caller, or the action does not apply
    to its current status. Re-read the order before retrying."""

    def __init__(
        self,
        message: str,
        business_order_code: Optional[str] = None,
        current_status: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.business_order_code = business_order_code
        self.current_status = current_status


class GatewayError(EngineError):
    """Payment provider or network failure, carrying the provider's message."""

    def __init__(self, message: str, operation: Optional[str] = None, capture_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation
        # Set when money was already captured before the failing call
        self.capture_id = capture_id


def manual_processing_required(business_order_code: str, action: str) -> NotFoundError:
    return NotFoundError(
        f"No payment authorization found for order {business_order_code}; "
        f"{action} requires manual processing.",
        business_order_code=business_order_code,
    )

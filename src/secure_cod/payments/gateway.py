"""Payment gateway collaborators.

The engine only needs four things from a gateway: open a gateway order for
an amount, verify the checkout callback, capture, and refund. ``Gateway`` is
that contract; ``RazorpayGateway`` implements it over the Razorpay SDK.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError, SignatureVerificationError
from razorpay.errors import GatewayError as RazorpayGatewayError

from ..errors import GatewayError
from ..utils.config import Config
from ..utils.logging import get_logger
from ..utils.money import format_amount, to_paise

logger = get_logger(__name__)

_PROVIDER_ERRORS = (BadRequestError, ServerError, RazorpayGatewayError, requests.RequestException)


class Gateway(ABC):
    """Opaque payment provider."""

    @abstractmethod
    def authorize(self, amount: Decimal, customer: Dict[str, Any]) -> Dict[str, Any]:
        """Open a gateway order the customer pays against. Returns ``{"gatewayOrderId": ...}``."""

    @abstractmethod
    def verify_payment(self, gateway_order_id: str, payment_id: str, signature: str) -> None:
        """Raise GatewayError unless the checkout callback signature is genuine."""

    @abstractmethod
    def capture(self, payment_id: str, amount: Decimal) -> Dict[str, Any]:
        """Capture a held amount. Returns ``{"transactionId": ...}``."""

    @abstractmethod
    def refund(self, payment_id: str, amount: Decimal, reason: str) -> Dict[str, Any]:
        """Refund or release an amount. Returns ``{"refundId": ...}``."""


class RazorpayGateway(Gateway):
    """Razorpay-backed gateway. Amounts go over the wire in paise."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        timeout: Optional[int] = None,
        currency: Optional[str] = None,
        client: Optional[razorpay.Client] = None,
    ) -> None:
        config = Config(".env")
        self.timeout = timeout or config.get("gateway_timeout")
        self.currency = currency or config.get("currency")
        if client is not None:
            self._client = client
            return
        key_id = key_id or config.get("razorpay_key_id")
        key_secret = key_secret or config.get("razorpay_key_secret")
        if not (key_id and key_secret):
            raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required")
        self._client = razorpay.Client(auth=(key_id, key_secret))

    def authorize(self, amount: Decimal, customer: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "amount": to_paise(amount),
            "currency": self.currency,
            "receipt": f"receipt_cod_{uuid.uuid4().hex[:16]}",
            "notes": {
                "type": "secure_cod_mandate",
                "customer_name": customer.get("customerName", ""),
                "customer_phone": customer.get("customerPhone", ""),
            },
        }
        order = self._call("authorize", self._client.order.create, payload, timeout=self.timeout)
        return {"gatewayOrderId": order["id"]}

    def verify_payment(self, gateway_order_id: str, payment_id: str, signature: str) -> None:
        try:
            self._client.utility.verify_payment_signature(
                {
                    "razorpay_order_id": gateway_order_id,
                    "razorpay_payment_id": payment_id,
                    "razorpay_signature": signature,
                }
            )
        except SignatureVerificationError as e:
            raise GatewayError(f"Payment signature verification failed: {e}", operation="verify") from e

    def capture(self, payment_id: str, amount: Decimal) -> Dict[str, Any]:
        payment = self._call(
            "capture",
            self._client.payment.capture,
            payment_id,
            to_paise(amount),
            {"currency": self.currency},
            timeout=self.timeout,
        )
        logger.info(f"Captured {format_amount(amount)} {self.currency} on payment {payment_id}")
        return {"transactionId": payment["id"]}

    def refund(self, payment_id: str, amount: Decimal, reason: str) -> Dict[str, Any]:
        refund = self._call(
            "refund",
            self._client.payment.refund,
            payment_id,
            {
                "amount": to_paise(amount),
                "speed": "normal",
                "notes": {"reason": reason},
                "receipt": f"refund-{payment_id}-{uuid.uuid4().hex[:8]}",
            },
            timeout=self.timeout,
        )
        logger.info(f"Refunded {format_amount(amount)} {self.currency} on payment {payment_id}")
        return {"refundId": refund["id"]}

    @staticmethod
    def _call(operation: str, func, *args, **kwargs) -> Dict[str, Any]:
        try:
            return func(*args, **kwargs)
        except _PROVIDER_ERRORS as e:
            logger.error(f"Razorpay {operation} failed: {e}")
            raise GatewayError(str(e), operation=operation) from e

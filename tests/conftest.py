"""
Pytest configuration and shared fixtures for Secure COD tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to Python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from secure_cod.domain import PaymentMethod  # noqa: E402
from secure_cod.engine import OrderEngine  # noqa: E402
from secure_cod.errors import GatewayError  # noqa: E402
from secure_cod.reconciliation.repository import InMemoryOrderStore  # noqa: E402
from secure_cod.utils.config import Config  # noqa: E402

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """Records every call. Operations listed in ``fail_on`` raise GatewayError.

    ``on_call`` runs inside the gateway call, while the order is in flight.
    """

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.on_call = None
        self._seq = 0

    def _record(self, operation, *args):
        self.calls.append((operation,) + args)
        if self.on_call is not None:
            self.on_call(operation)
        if operation in self.fail_on:
            raise GatewayError(f"{operation} declined by provider", operation=operation)
        self._seq += 1
        return self._seq

    def calls_for(self, operation):
        return [call[1:] for call in self.calls if call[0] == operation]

    def authorize(self, amount, customer):
        seq = self._record("authorize", amount, customer)
        return {"gatewayOrderId": f"order_{seq}"}

    def verify_payment(self, gateway_order_id, payment_id, signature):
        self._record("verify", gateway_order_id, payment_id, signature)
        if signature == "bad-signature":
            raise GatewayError("Payment signature verification failed", operation="verify")

    def capture(self, payment_id, amount):
        seq = self._record("capture", payment_id, amount)
        return {"transactionId": f"txn_{seq}"}

    def refund(self, payment_id, amount, reason):
        seq = self._record("refund", payment_id, amount, reason)
        return {"refundId": f"rfnd_{seq}"}


@pytest.fixture
def clock():
    """Clock pinned to T0."""
    return FixedClock(T0)


@pytest.fixture
def store():
    """Empty in-memory record store."""
    return InMemoryOrderStore()


@pytest.fixture
def gateway():
    """Recording gateway double."""
    return FakeGateway()


@pytest.fixture
def engine(store, gateway, clock):
    """Engine over the in-memory store, default configuration."""
    return OrderEngine(store, gateway, config=Config(), clock=clock)


@pytest.fixture
def checkout_record():
    """Storefront checkout for #SMRT-1234: 1000 less a 10% collection discount."""
    return {
        "businessOrderCode": "#SMRT-1234",
        "customerName": "Asha Rao",
        "customerEmail": "asha@example.com",
        "customerPhone": "9876543210",
        "customerAddress": "12 MG Road, Bengaluru",
        "pincode": "560001",
        "productDescription": "Handloom saree",
        "productId": "8812",
        "collectionName": "Summer",
        "quantity": 1,
        "originalPrice": "1000.00",
        "price": "900.00",
        "discountPercentage": "10",
        "discountAmount": "100.00",
        "paymentMethod": PaymentMethod.SECURE_COD.value,
        "source": "storefront",
    }


@pytest.fixture
def authorized_order(engine, checkout_record):
    """#SMRT-1234 authorized for 900 at T0 with payment pay_1."""
    engine.verify_intent(checkout_record)
    return engine.transition(
        "#SMRT-1234",
        "authorize",
        {"payment_id": "pay_1", "gateway_order_id": "order_1", "signature": "sig_1"},
    )

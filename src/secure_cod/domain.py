"""
Domain types shared by every engine module.

Order and lead records stay plain dicts with camelCase keys, the same shape
they have in the ``orders`` / ``leads`` collections. Only the records the
engine itself owns (authorization info, discount rules, loyalty cards) get
dataclasses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class PaymentStatus(str, Enum):
    LEAD = "Lead"
    INTENT_VERIFIED = "Intent Verified"
    AUTHORIZED = "Authorized"
    PAID = "Paid"
    FEE_CHARGED = "Fee Charged"
    VOIDED = "Voided"
    REFUNDED = "Refunded"
    # Manual-order entry states, outside the gateway flow
    PENDING = "Pending"
    PARTIALLY_PAID = "Partially Paid"
    # Lead tombstone once the lead became an order
    CONVERTED = "Converted"


class CancellationStatus(str, Enum):
    PENDING = "Pending"
    PROCESSED = "Processed"
    FAILED = "Failed"
    # Cancellation closed by a fee settlement or a refund
    SETTLED = "Settled"


class RefundStatus(str, Enum):
    PENDING = "Pending"
    PROCESSED = "Processed"
    FAILED = "Failed"


class Source(str, Enum):
    STOREFRONT = "storefront"
    MANUAL = "manual"
    EXTERNAL_PLATFORM = "external-platform"
    SELLER = "seller"


class PaymentMethod(str, Enum):
    PREPAID = "Prepaid"
    SECURE_COD = "Secure Charge on Delivery"
    CASH_ON_DELIVERY = "Cash on Delivery"


# Plain strings: Enum members hash by name, so sets of members miss stored values
LEAD_VIEW_STATUSES = frozenset({PaymentStatus.LEAD.value, PaymentStatus.INTENT_VERIFIED.value})

# Customer fields a checkout record must carry before it is accepted
REQUIRED_CUSTOMER_FIELDS = ("customerName", "customerPhone", "customerAddress", "pincode")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Accept aware/naive datetimes and ISO strings (``Z`` suffix included).

    Naive values are treated as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class PaymentAuthorizationInfo:
    """Gateway proof of a full-amount authorization. Written once per order."""

    business_order_code: str
    payment_id: str
    gateway_order_id: str
    signature: str
    authorized_at: datetime
    amount: Decimal
    status: str = "authorized"

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.business_order_code,
            "businessOrderCode": self.business_order_code,
            "paymentId": self.payment_id,
            "gatewayOrderId": self.gateway_order_id,
            "signature": self.signature,
            "authorizedAt": self.authorized_at.isoformat(),
            "amount": str(self.amount),
            "status": self.status,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PaymentAuthorizationInfo":
        return cls(
            business_order_code=doc["businessOrderCode"],
            payment_id=doc["paymentId"],
            gateway_order_id=doc.get("gatewayOrderId", ""),
            signature=doc.get("signature", ""),
            authorized_at=parse_timestamp(doc["authorizedAt"]),
            amount=Decimal(str(doc.get("amount", "0"))),
            status=doc.get("status", "authorized"),
        )


@dataclass(frozen=True)
class DiscountRule:
    """A percentage discount scoped by its id prefix.

    ``product_<id>``, ``vendor_<name>``, ``collection_<name>``, or ``link``
    for a discount carried on the checkout link itself.
    """

    id: str
    discount_percent: Decimal
    type: str = ""
    name: str = ""

    @property
    def scope(self) -> str:
        return self.type or self.id.split("_", 1)[0]

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "type": self.scope,
            "name": self.name,
            "discount": str(self.discount_percent),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "DiscountRule":
        return cls(
            id=str(doc.get("id") or doc["_id"]),
            discount_percent=Decimal(str(doc.get("discount", "0"))),
            type=doc.get("type", ""),
            name=doc.get("name", ""),
        )


@dataclass(frozen=True)
class LoyaltyRecord:
    """Shakti reward card, one per customer phone number."""

    card_number: str
    phone_key: str
    customer_phone: str
    customer_name: str
    points: int
    cashback: Decimal
    valid_from: date
    valid_thru: date
    seller_id: str
    seller_name: str
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc["_id"] = self.phone_key
        doc["cashback"] = str(self.cashback)
        doc["valid_from"] = self.valid_from.isoformat()
        doc["valid_thru"] = self.valid_thru.isoformat()
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "LoyaltyRecord":
        return cls(
            card_number=doc["card_number"],
            phone_key=doc["phone_key"],
            customer_phone=doc["customer_phone"],
            customer_name=doc.get("customer_name", ""),
            points=int(doc.get("points", 0)),
            cashback=Decimal(str(doc.get("cashback", "0"))),
            valid_from=date.fromisoformat(doc["valid_from"]),
            valid_thru=date.fromisoformat(doc["valid_thru"]),
            seller_id=doc.get("seller_id", ""),
            seller_name=doc.get("seller_name", ""),
            customer_email=doc.get("customer_email"),
            customer_address=doc.get("customer_address"),
        )

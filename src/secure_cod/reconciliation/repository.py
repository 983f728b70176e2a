"""Order record stores: MongoDB for deployments, in-memory for embedding and tests."""

from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError

from ..domain import DiscountRule, LoyaltyRecord, PaymentAuthorizationInfo, utcnow
from ..errors import ConflictError, ValidationError
from ..utils.config import Config
from ..utils.logging import get_logger

logger = get_logger(__name__)

ORDERS = "orders"
LEADS = "leads"
OVERRIDES = "order_overrides"
PAYMENT_INFO = "payment_info"
DISCOUNTS = "discounts"
LOYALTY = "loyalty_cards"
ORDER_STATE = "order_state"
SETTINGS = "settings"

CLAIM_TTL = timedelta(minutes=5)

Record = Dict[str, Any]


def _require_record_id(record: Record) -> str:
    record_id = record.get("recordId")
    if not record_id:
        raise ValidationError("record is missing recordId")
    return str(record_id)


class OrderRecordStore(ABC):
    """Append-mostly storage behind the reconciliation engine."""

    @abstractmethod
    def put_raw_order(self, record: Record) -> None: ...

    @abstractmethod
    def put_raw_lead(self, record: Record) -> None: ...

    @abstractmethod
    def put_override(self, record_id: str, patch: Record) -> None:
        """Merge ``patch`` into the record's override, last write wins per field."""

    @abstractmethod
    def list_orders(self) -> List[Record]: ...

    @abstractmethod
    def list_leads(self) -> List[Record]: ...

    @abstractmethod
    def get_overrides(self) -> Dict[str, Record]: ...

    @abstractmethod
    def records_for_code(self, business_order_code: str) -> Tuple[List[Record], List[Record], Dict[str, Record]]:
        """Orders, leads and the overrides that apply to them, for one order code."""

    @abstractmethod
    def get_payment_authorization(self, business_order_code: str) -> Optional[PaymentAuthorizationInfo]: ...

    @abstractmethod
    def add_payment_authorization(self, info: PaymentAuthorizationInfo) -> None:
        """Store authorization info; raises ConflictError if one already exists."""

    @abstractmethod
    def list_discount_rules(self) -> List[DiscountRule]: ...

    @abstractmethod
    def put_discount_rule(self, rule: DiscountRule) -> None: ...

    @abstractmethod
    def find_loyalty(self, phone_key: str) -> Optional[LoyaltyRecord]: ...

    @abstractmethod
    def add_loyalty(self, record: LoyaltyRecord) -> LoyaltyRecord:
        """Insert unless a card exists for the phone key; returns the stored card."""

    @abstractmethod
    def claim(self, business_order_code: str) -> str:
        """Mark the order in-flight for every writer sharing this store.

        Returns a token for ``release_claim``. Raises ConflictError while
        another writer holds an unexpired claim on the same code.
        """

    @abstractmethod
    def release_claim(self, business_order_code: str, token: str, status: Optional[str] = None) -> None:
        """Drop a claim taken with ``token``, noting the status it left behind."""

    @abstractmethod
    def get_or_create_setting(self, name: str, default: str) -> str:
        """First writer's value wins; later callers read it back."""


class InMemoryOrderStore(OrderRecordStore):
    """Process-local store. Every read hands out copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._orders: Dict[str, Record] = {}
        self._leads: Dict[str, Record] = {}
        self._overrides: Dict[str, Record] = {}
        self._payment_info: Dict[str, PaymentAuthorizationInfo] = {}
        self._discounts: Dict[str, DiscountRule] = {}
        self._loyalty: Dict[str, LoyaltyRecord] = {}
        self._claims: Dict[str, str] = {}
        self._settings: Dict[str, str] = {}

    def put_raw_order(self, record: Record) -> None:
        record_id = _require_record_id(record)
        with self._lock:
            self._orders[record_id] = copy.deepcopy(record)

    def put_raw_lead(self, record: Record) -> None:
        record_id = _require_record_id(record)
        with self._lock:
            self._leads[record_id] = copy.deepcopy(record)

    def put_override(self, record_id: str, patch: Record) -> None:
        with self._lock:
            merged = self._overrides.setdefault(record_id, {})
            merged.update(copy.deepcopy(patch))

    def list_orders(self) -> List[Record]:
        with self._lock:
            return copy.deepcopy(list(self._orders.values()))

    def list_leads(self) -> List[Record]:
        with self._lock:
            return copy.deepcopy(list(self._leads.values()))

    def get_overrides(self) -> Dict[str, Record]:
        with self._lock:
            return copy.deepcopy(self._overrides)

    def records_for_code(self, business_order_code: str) -> Tuple[List[Record], List[Record], Dict[str, Record]]:
        with self._lock:
            orders = [r for r in self._orders.values() if r.get("businessOrderCode") == business_order_code]
            leads = [r for r in self._leads.values() if r.get("businessOrderCode") == business_order_code]
            ids = {r["recordId"] for r in orders + leads}
            overrides = {rid: patch for rid, patch in self._overrides.items() if rid in ids}
            return copy.deepcopy(orders), copy.deepcopy(leads), copy.deepcopy(overrides)

    def get_payment_authorization(self, business_order_code: str) -> Optional[PaymentAuthorizationInfo]:
        with self._lock:
            return self._payment_info.get(business_order_code)

    def add_payment_authorization(self, info: PaymentAuthorizationInfo) -> None:
        with self._lock:
            if info.business_order_code in self._payment_info:
                raise ConflictError(
                    f"Payment authorization for {info.business_order_code} already recorded",
                    business_order_code=info.business_order_code,
                )
            self._payment_info[info.business_order_code] = info

    def list_discount_rules(self) -> List[DiscountRule]:
        with self._lock:
            return list(self._discounts.values())

    def put_discount_rule(self, rule: DiscountRule) -> None:
        with self._lock:
            self._discounts[rule.id] = rule

    def find_loyalty(self, phone_key: str) -> Optional[LoyaltyRecord]:
        with self._lock:
            return self._loyalty.get(phone_key)

    def add_loyalty(self, record: LoyaltyRecord) -> LoyaltyRecord:
        with self._lock:
            return self._loyalty.setdefault(record.phone_key, record)

    def claim(self, business_order_code: str) -> str:
        with self._lock:
            if business_order_code in self._claims:
                raise ConflictError(
                    f"Order {business_order_code} has another payment operation in progress",
                    business_order_code=business_order_code,
                )
            token = self._claims[business_order_code] = uuid.uuid4().hex
            return token

    def release_claim(self, business_order_code: str, token: str, status: Optional[str] = None) -> None:
        with self._lock:
            if self._claims.get(business_order_code) == token:
                del self._claims[business_order_code]

    def get_or_create_setting(self, name: str, default: str) -> str:
        with self._lock:
            return self._settings.setdefault(name, default)


class MongoOrderStore(OrderRecordStore):
    """MongoDB-backed store; documents are keyed by ``_id``."""

    def __init__(
        self,
        url: Optional[str] = None,
        db_name: Optional[str] = None,
        client: Optional[MongoClient] = None,
        claim_ttl: timedelta = CLAIM_TTL,
    ) -> None:
        config = Config(".env")
        self._url = url or config.get("mongo_url")
        self._db = db_name or config.get("mongo_db")
        self._client: Optional[MongoClient] = client
        self._claim_ttl = claim_ttl
        if self._client is None and not self._url:
            raise ValueError("DB_CONNECTION_URL is required")

    def __enter__(self) -> "MongoOrderStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def connect(self) -> None:
        if self._client is None:
            self._client = MongoClient(self._url, serverSelectionTimeoutMS=5000)

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _coll(self, name: str):
        if self._client is None:
            self.connect()
        return self._client[self._db][name]

    @staticmethod
    def _strip(doc: Optional[Record]) -> Optional[Record]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    def _put_record(self, collection: str, record: Record) -> None:
        record_id = _require_record_id(record)
        self._coll(collection).replace_one({"_id": record_id}, {**record, "_id": record_id}, upsert=True)
        logger.debug(f"Stored {collection} record {record_id}")

    def put_raw_order(self, record: Record) -> None:
        self._put_record(ORDERS, record)

    def put_raw_lead(self, record: Record) -> None:
        self._put_record(LEADS, record)

    def put_override(self, record_id: str, patch: Record) -> None:
        patch = {k: v for k, v in patch.items() if k != "_id"}
        if not patch:
            return
        self._coll(OVERRIDES).update_one({"_id": record_id}, {"$set": patch}, upsert=True)

    def list_orders(self) -> List[Record]:
        return [self._strip(doc) for doc in self._coll(ORDERS).find({})]

    def list_leads(self) -> List[Record]:
        return [self._strip(doc) for doc in self._coll(LEADS).find({})]

    def get_overrides(self) -> Dict[str, Record]:
        return {str(doc["_id"]): self._strip(doc) for doc in self._coll(OVERRIDES).find({})}

    def records_for_code(self, business_order_code: str) -> Tuple[List[Record], List[Record], Dict[str, Record]]:
        query = {"businessOrderCode": business_order_code}
        orders = [self._strip(doc) for doc in self._coll(ORDERS).find(query)]
        leads = [self._strip(doc) for doc in self._coll(LEADS).find(query)]
        ids = [r["recordId"] for r in orders + leads if r.get("recordId")]
        overrides: Dict[str, Record] = {}
        if ids:
            for doc in self._coll(OVERRIDES).find({"_id": {"$in": ids}}):
                overrides[str(doc["_id"])] = self._strip(doc)
        return orders, leads, overrides

    def get_payment_authorization(self, business_order_code: str) -> Optional[PaymentAuthorizationInfo]:
        doc = self._coll(PAYMENT_INFO).find_one({"_id": business_order_code})
        return PaymentAuthorizationInfo.from_document(doc) if doc else None

    def add_payment_authorization(self, info: PaymentAuthorizationInfo) -> None:
        try:
            self._coll(PAYMENT_INFO).insert_one(info.to_document())
        except DuplicateKeyError:
            raise ConflictError(
                f"Payment authorization for {info.business_order_code} already recorded",
                business_order_code=info.business_order_code,
            ) from None

    def list_discount_rules(self) -> List[DiscountRule]:
        return [DiscountRule.from_document(doc) for doc in self._coll(DISCOUNTS).find({})]

    def put_discount_rule(self, rule: DiscountRule) -> None:
        self._coll(DISCOUNTS).replace_one({"_id": rule.id}, rule.to_document(), upsert=True)

    def find_loyalty(self, phone_key: str) -> Optional[LoyaltyRecord]:
        doc = self._coll(LOYALTY).find_one({"_id": phone_key})
        return LoyaltyRecord.from_document(doc) if doc else None

    def add_loyalty(self, record: LoyaltyRecord) -> LoyaltyRecord:
        try:
            self._coll(LOYALTY).insert_one(record.to_document())
        except DuplicateKeyError:
            # Another authorization for the same phone won the insert
            existing = self.find_loyalty(record.phone_key)
            if existing is None:
                raise
            return existing
        return record

    def claim(self, business_order_code: str) -> str:
        token = uuid.uuid4().hex
        now = utcnow()
        # Matches only a free or expired claim; otherwise the upsert collides on _id
        query = {
            "_id": business_order_code,
            "$or": [{"inFlight": {"$ne": True}}, {"claimedAt": {"$lt": now - self._claim_ttl}}],
        }
        update = {"$set": {"inFlight": True, "claimToken": token, "claimedAt": now}}
        try:
            self._coll(ORDER_STATE).update_one(query, update, upsert=True)
        except DuplicateKeyError:
            raise ConflictError(
                f"Order {business_order_code} has another payment operation in progress",
                business_order_code=business_order_code,
            ) from None
        return token

    def release_claim(self, business_order_code: str, token: str, status: Optional[str] = None) -> None:
        fields: Record = {"inFlight": False}
        if status is not None:
            fields["status"] = status
        result = self._coll(ORDER_STATE).update_one(
            {"_id": business_order_code, "claimToken": token},
            {"$set": fields, "$unset": {"claimToken": ""}},
        )
        if result.matched_count == 0:
            logger.warning(f"Claim on order {business_order_code} expired before it was released")

    def get_or_create_setting(self, name: str, default: str) -> str:
        try:
            self._coll(SETTINGS).insert_one({"_id": name, "value": default})
        except DuplicateKeyError:
            doc = self._coll(SETTINGS).find_one({"_id": name})
            if doc is None:
                raise
            return doc["value"]
        return default

"""Reconciliation module entry point."""

from .engine import OrderReconciler, reconcile, fold_records, resolve_payment_status, derive_cancellation_id
from .repository import OrderRecordStore, InMemoryOrderStore, MongoOrderStore

__all__ = [
    "OrderReconciler",
    "reconcile",
    "fold_records",
    "resolve_payment_status",
    "derive_cancellation_id",
    "OrderRecordStore",
    "InMemoryOrderStore",
    "MongoOrderStore",
]

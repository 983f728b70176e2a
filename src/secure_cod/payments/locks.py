"""Per-order single-writer guard within one process."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Set

from ..errors import ConflictError


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class OrderLocks:
    """One lock per business order code, plus an in-flight marker.

    A status change holds the order's lock only while it reads or writes
    state. While its gateway call runs the code is marked in-flight, so a
    second writer fails fast with ConflictError instead of queueing a second
    gateway call behind the first. A code's lock lives only while someone
    holds or waits on it.

    Writers in other processes are kept out by the record store's claim.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _Entry] = {}
        self._in_flight: Set[str] = set()

    @contextmanager
    def hold(self, business_order_code: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(business_order_code)
            if entry is None:
                entry = self._locks[business_order_code] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[business_order_code]

    def reserve(self, business_order_code: str) -> None:
        """Mark the order in-flight. Call while holding its lock."""
        with self._guard:
            if business_order_code in self._in_flight:
                raise ConflictError(
                    f"Order {business_order_code} has another payment operation in progress",
                    business_order_code=business_order_code,
                )
            self._in_flight.add(business_order_code)

    def release(self, business_order_code: str) -> None:
        with self._guard:
            self._in_flight.discard(business_order_code)

    def is_in_flight(self, business_order_code: str) -> bool:
        return business_order_code in self._in_flight

    def __len__(self) -> int:
        """Codes with a live lock."""
        with self._guard:
            return len(self._locks)

"""Monetary amount and phone number helpers."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ..errors import ValidationError

TWO_PLACES = Decimal("0.01")


def to_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse a stored or user-supplied amount into a two-place Decimal.

    Stored records carry prices as strings ("900"), ints or floats depending
    on the writer, so everything goes through ``str`` first.
    """
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric, got {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be numeric, got {value!r}") from None
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite, got {value!r}")
    try:
        # Raises once the two-place result needs more digits than the context allows
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large, got {value!r}") from None


def to_paise(amount: Decimal) -> int:
    """Smallest currency unit, as the gateway expects."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def sanitize_phone_number(phone: str) -> str:
    """Digits only; a bare 10-digit Indian mobile number gets the 91 prefix."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", str(phone))
    if digits.startswith("91") and len(digits) == 12:
        return digits
    if len(digits) == 10:
        return f"91{digits}"
    return digits


def phone_key(phone: str) -> str:
    """Suffix key used to match numbers with and without a country code."""
    return sanitize_phone_number(phone)[-10:]

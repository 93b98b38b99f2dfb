"""Synchronous validation of price change requests.

Runs before any job is created or any row is touched. Each failure is a
``PriceValidationError`` subclass whose message is surfaced verbatim to the
caller (HTTP 422 in the API layer).

Public entrypoint: validate_price_request(...)
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

# Plain decimal literal: optional sign, digits with optional fraction (or a
# bare fraction), optional exponent. Rejects NaN / Infinity / underscores.
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class PriceValidationError(ValueError):
    code = "invalid_request"


class EmptyTargetSet(PriceValidationError):
    code = "empty_target_set"


class InvalidPriceFormat(PriceValidationError):
    code = "invalid_price_format"


class NegativePrice(PriceValidationError):
    code = "negative_price"


class SaleNotBelowRegular(PriceValidationError):
    code = "sale_not_below_regular"


def normalize_price(value: Optional[str]) -> Optional[str]:
    """Trim surrounding whitespace; None stays None."""
    if value is None:
        return None
    return str(value).strip()


def _parse(value: str, label: str) -> Decimal:
    if not _NUMERIC_RE.match(value):
        raise InvalidPriceFormat(f"{label} price must be a valid number.")
    try:
        return Decimal(value)
    except InvalidOperation:  # pragma: no cover - regex already guards
        raise InvalidPriceFormat(f"{label} price must be a valid number.")


def validate_price_request(
    target_ids: Sequence[int],
    regular_price: Optional[str],
    sale_price: Optional[str],
) -> None:
    """Raise a PriceValidationError if the request must be rejected.

    Empty strings are valid desired values (leave regular / clear sale) and
    skip the numeric checks.
    """
    if not target_ids:
        raise EmptyTargetSet("No variations selected.")

    regular = _parse(regular_price, "Regular") if regular_price else None
    sale = _parse(sale_price, "Sale") if sale_price else None

    if regular is not None and regular < 0:
        raise NegativePrice("Regular price cannot be negative.")
    if sale is not None and sale < 0:
        raise NegativePrice("Sale price cannot be negative.")
    if regular is not None and sale is not None and sale >= regular:
        raise SaleNotBelowRegular("Sale price must be lower than the regular price.")


__all__ = [
    "PriceValidationError",
    "EmptyTargetSet",
    "InvalidPriceFormat",
    "NegativePrice",
    "SaleNotBelowRegular",
    "normalize_price",
    "validate_price_request",
]

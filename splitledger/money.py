"""Money and percentage primitives.

Amounts cross module boundaries as ``Decimal`` values quantized to two
places with ``ROUND_HALF_UP``. Inside the allocator and the aggregator they
are carried as integer cents (and percentages as integer hundredths of a
percent) so remainder arithmetic is exact.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# 0.01 expressed in cents / hundredths of a percent
MONEY_TOLERANCE_CENTS = 1
PERCENT_TOLERANCE_BP = 1

FULL_PERCENT_BP = 10000


def to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"Not a numeric amount: {value!r}", value)

    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, (int, float)):
            amount = Decimal(str(value))
        elif isinstance(value, str):
            amount = Decimal(value.strip())
        else:
            raise InvalidAmount(f"Not a numeric amount: {value!r}", value)

        if not amount.is_finite():
            raise InvalidAmount(f"Not a finite amount: {value!r}", value)
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Not a numeric amount: {value!r}", value) from None


round2 = to_decimal


def to_cents(value: Any) -> int:
    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2).quantize(CENT)


# Percentages use the same two-place representation as money
to_basis_points = to_cents
from_basis_points = from_cents


def divide_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounded half away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return quotient if numerator >= 0 else -quotient


def amounts_close(a: Any, b: Any, tolerance: Decimal = CENT) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance

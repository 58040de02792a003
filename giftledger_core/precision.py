"""
Amount constants and helpers for GiftLedger.

Gift amounts are unsigned 64-bit integers counted in the currency's
smallest indivisible unit:

    0 <= amount <= MAX_AMOUNT  (2**64 - 1)

All arithmetic on amounts goes through ``checked_add`` / ``checked_sum``
so that an overflowing merge or bulk sum is rejected instead of wrapping.
"""

from __future__ import annotations

from typing import Iterable

from giftledger_core.errors import InvalidAmount

# Width of a gift amount in bits.
AMOUNT_BITS: int = 64

# Largest representable amount.
MAX_AMOUNT: int = (1 << AMOUNT_BITS) - 1

# Number of decimal places used when rendering amounts for humans.
DISPLAY_DECIMALS: int = 8

UNITS_PER_COIN: int = 10 ** DISPLAY_DECIMALS  # 100_000_000


def validate_amount(value, name: str = "amount") -> int:
    """Return *value* as an int, raising InvalidAmount if it is not a u64.

    ``bool`` is rejected even though it subclasses ``int``.

    >>> validate_amount(100)
    100
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidAmount(f"{name} must be non-negative, got {value}")
    if value > MAX_AMOUNT:
        raise InvalidAmount(f"{name} exceeds the 64-bit limit")
    return value


def checked_add(a: int, b: int) -> int:
    """Add two amounts, raising InvalidAmount on u64 overflow."""
    total = a + b
    if total > MAX_AMOUNT:
        raise InvalidAmount(f"{a} + {b} overflows the 64-bit limit")
    return total


def checked_sum(values: Iterable[int]) -> int:
    """Sum amounts left to right with overflow checking."""
    total = 0
    for v in values:
        total = checked_add(total, v)
    return total


def units_to_coins(units: int) -> float:
    """Convert an integer unit count to a display float."""
    return units / UNITS_PER_COIN


def format_amount(units: int, currency: str = "GFT") -> str:
    """Return a human-readable string with 8 decimal places."""
    return f"{units_to_coins(units):.{DISPLAY_DECIMALS}f} {currency}"

"""
Currency helpers.

Amounts are carried as integer cents everywhere inside the core; these helpers
convert at the edges (configuration, HTTP payloads, human-readable text).
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_cents(value: Number) -> int:
    """Convert an amount in currency units to integer cents (ROUND_HALF_UP)."""
    try:
        # str() first so floats like 0.1 do not drag binary noise along
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a Decimal amount in currency units."""
    return (Decimal(cents) / 100).quantize(CENT)


def format_brl(cents: int) -> str:
    """Format cents as Brazilian reais, e.g. ``R$ 1.234,50``."""
    sign = "-" if cents < 0 else ""
    units, rest = divmod(abs(cents), 100)
    grouped = f"{units:,}".replace(",", ".")
    return f"{sign}R$ {grouped},{rest:02d}"

"""USD amounts as integer micro-dollars.

Spend amounts round up and limits round down, so rounding never lets a
payment slip past a limit it should have hit.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR
from typing import Union


Amount = Union[Decimal, float, int, str]

MICROS_PER_USD = 1_000_000
_USD_QUANT = Decimal("0.000001")


def _to_decimal(value: Amount) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Amount must be finite, got {value!r}")
    try:
        dec = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not an amount: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return dec


def amount_usd_to_micros(value: Amount) -> int:
    """Convert a spend amount to micro-dollars, rounding up."""
    dec = _to_decimal(value).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_usd_to_micros(value: Amount) -> int:
    """Convert a limit or threshold to micro-dollars, rounding down."""
    dec = _to_decimal(value).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_usd_float(value: int) -> float:
    return float((Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT))


def format_usd_from_micros(value: int) -> str:
    """Format micro-dollars for reasons and CLI output, e.g. ``$12.50``."""
    dec = (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)
    return f"${dec:.2f}"

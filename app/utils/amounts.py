from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


def to_amount(value: Any, default: int = 0) -> int:
    """Coerce a loosely typed number (int, float, numeric string) to an integer amount."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    raw = str(value).strip().replace(',', '')
    if not raw:
        return default
    try:
        return int(Decimal(raw).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return default


def percent_of(amount: int, percent: int | float | Decimal) -> int:
    share = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(share.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def toman_to_rial(amount: int) -> int:
    return amount * 10


def to_count(value: Any, default: int) -> int:
    """Strict whole-number parse for request counts; raises ``ValueError`` on anything else."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f'not a count: {value!r}')
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip('+-').isdigit():
        return int(value.strip())
    raise ValueError(f'not a count: {value!r}')

"""Amount and progress helpers (core domain)."""

from __future__ import annotations

from typing import Union

TOKEN_DECIMALS = 18

Amount = Union[int, str]


def format_amount(amount: Amount, decimals: int = TOKEN_DECIMALS) -> str:
    """Render a smallest-unit integer as dollars, truncating to two digits.

    >>> format_amount("1500000000000000000")
    '$1.50'
    """

    value = int(amount)
    divisor = 10**decimals
    whole, fraction = divmod(value, divisor)
    fraction_str = str(fraction).zfill(decimals)[:2].ljust(2, "0")
    return f"${whole}.{fraction_str}"


def calculate_progress(current: Amount, target: Amount) -> int:
    """Return floor(current * 100 / target), or 0 for a zero target."""

    target_value = int(target)
    if target_value == 0:
        return 0
    return int(current) * 100 // target_value


def remaining_amount(current: Amount, target: Amount) -> int:
    return max(0, int(target) - int(current))

"""
amounts.py - Fixed-Point Amount and Rate Helpers

Loan amounts are integers in base units with 18 implied decimal places
("wei"), and interest rates are integer basis points. These helpers convert
between those integers and human-readable values:

    parse_units("100")            -> 100000000000000000000
    format_units(10**20)          -> "100.0"
    format_rate(500)              -> "5%"
"""

from __future__ import annotations
from decimal import Decimal, InvalidOperation
from typing import Union


# Number of implied decimal places in a base-unit amount.
TOKEN_DECIMALS = 18

# Interest rates are expressed in basis points of this denominator.
BASIS_POINTS = 10000

# Highest accepted annual rate (100%/year).
MAX_INTEREST_RATE = 10000

# Largest amount a loan term can carry (uint256).
MAX_UINT256 = 2**256 - 1

SECONDS_PER_DAY = 86400


def parse_units(value: Union[str, int, Decimal, float], decimals: int = TOKEN_DECIMALS) -> int:
    """
    Convert a human-readable amount to integer base units.

    Args:
        value: Amount such as "100", "1.5" or Decimal("0.25")
        decimals: Implied decimal places of the base unit (default 18)

    Returns:
        Exact integer number of base units.

    Raises:
        ValueError: If the value is not a finite number or has more
                    fractional digits than `decimals` allows.
    """
    if decimals < 0:
        raise ValueError(f"decimals cannot be negative, got {decimals}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"amount must be finite, got {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value!r} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """
    Render integer base units as a decimal string.

    Always keeps at least one fractional digit, so whole amounts read as
    "100.0" and fractional ones keep every significant digit.
    """
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise TypeError(f"amount must be int, got {type(amount).__name__}")
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals else ""
    return f"{sign}{whole}.{frac_str or '0'}"


def format_rate(basis_points: int) -> str:
    """Render a basis-point rate as a percentage, e.g. 500 -> "5%", 525 -> "5.25%"."""
    percent = (Decimal(basis_points) / Decimal(100)).normalize()
    if percent == percent.to_integral_value():
        return f"{int(percent)}%"
    return f"{format(percent, 'f')}%"

"""
Display formatting helpers for USD values.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Union

_NON_NUMERIC = re.compile(r"[^0-9.]")


def parse_usd_value(value: Union[str, int, float, None]) -> float:
    """Parse a display value like "$1,234.56" into a float.

    Everything except digits and dots is stripped first, so both pre-formatted
    strings and raw numbers total correctly. Unparseable input counts as 0.
    """
    if value is None:
        return 0.0
    cleaned = _NON_NUMERIC.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def format_usd(amount: Union[Decimal, float, int, str]) -> str:
    """Format an amount as "$1,234.56"."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        value = Decimal(0)
    return f"${value:,.2f}"


def format_token_amount(raw: int, decimals: int = 18) -> str:
    """Convert a raw integer token amount to a plain decimal string."""
    value = Decimal(raw) / Decimal(10 ** decimals)
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"

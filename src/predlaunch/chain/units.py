"""Fixed-point token amounts. All balances and allowances are ints in base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


def parse_units(value: str | int | Decimal, decimals: int) -> int:
    """Convert a human amount ("100", "12.5") to base units. Rejects excess precision."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e
    if amount < 0:
        raise ValueError(f"Negative amount: {value!r}")
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value!r} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    """Base units -> decimal string without trailing zeros ("1.5", "100")."""
    if decimals == 0:
        return str(amount)
    text = str(Decimal(amount).scaleb(-decimals).quantize(Decimal(1).scaleb(-decimals)))
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text

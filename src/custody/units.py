"""Conversions between minimal units (wei, drops) and display amounts.

All arithmetic inside the services is done on integers; ``Decimal`` only
appears at the ledger and API boundary.
"""

from decimal import ROUND_DOWN, Decimal


def to_display(amount: int, decimals: int) -> Decimal:
    """Convert minimal units to a display amount."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def to_minimal(amount: Decimal, decimals: int) -> int:
    """Convert a display amount to minimal units, truncating dust."""
    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def format_amount(amount: Decimal) -> str:
    """Render without exponent and trailing zeros ("2", "0.00042")."""
    text = format(Decimal(amount), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"

# mlm_system/utils/money.py
"""
Fixed-point money helpers. Floats never enter the engine.
"""
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Any

from mlm_system.errors import ValidationError

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Convert DB/config/user values to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary expansion.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")


def round_down(amount: Decimal, quantum: Decimal = CENT) -> Decimal:
    """Truncate to the smallest currency unit, never rounding up."""
    return amount.quantize(quantum, rounding=ROUND_DOWN)


def money_str(amount: Decimal) -> str:
    """Serialize for JSON columns without losing precision."""
    return str(round_down(amount))

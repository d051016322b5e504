from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

# Smallest currency unit: one Rupiah
MONEY_QUANTUM = Decimal("1")


def to_decimal(value) -> Decimal:
    """Convert a DB/JSON value to Decimal without passing through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOperation("boolean is not an amount")
    if isinstance(value, float):
        # repr() round-trips the literal the client sent, not its binary expansion
        return Decimal(repr(value))
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    """Round half-up to the smallest currency unit."""
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def is_whole_units(value: Decimal) -> bool:
    return value == value.quantize(MONEY_QUANTUM)


def money_str(value) -> str | None:
    """Serialize an amount as a decimal string in whole units ("50000")."""
    if value is None:
        return None
    return str(round_money(to_decimal(value)))

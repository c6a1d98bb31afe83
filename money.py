"""Money arithmetic: decimals rounded half-up to cents, compared exactly."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

from service_config import TAX_RATE

CENT = Decimal('0.01')


def to_money(value) -> Decimal:
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_totals(subtotal: Decimal, tax_rate: float = TAX_RATE) -> Tuple[Decimal, Decimal]:
    """Return (tax, total), each rounded half-up to cents."""
    tax = round_money(subtotal * to_money(tax_rate))
    total = round_money(subtotal + tax)
    return tax, total


def to_minor_units(amount: Decimal) -> int:
    return int(round_money(amount) * 100)

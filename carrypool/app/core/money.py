"""
Fixed-point money and weight helpers.

Amounts are carried as integer minor units (cents), weights as whole grams.
"""

from decimal import Decimal, ROUND_HALF_UP

BASIS_POINTS = 10000


def apply_basis_points(amount: int, bps: int) -> int:
    """
    Integer percentage of an amount, rounded half-up to the minor unit.

    1000 bps == 10%.
    """
    return (amount * bps + BASIS_POINTS // 2) // BASIS_POINTS


def to_grams(weight_kg: Decimal) -> int:
    """Convert kilograms to whole grams, rounding half-up."""
    return int((Decimal(str(weight_kg)) * 1000).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

"""
Settlement fee arithmetic. Integer minor units, half-up rounding.
"""

from dataclasses import dataclass
from typing import Optional

from carrypool.app.core.config import settings
from carrypool.app.core.money import apply_basis_points


@dataclass(frozen=True)
class FeeBreakdown:
    amount: int
    platform_fee: int
    gateway_fee: int
    net_amount: int


def compute_fees(
    amount: int,
    platform_fee_bps: Optional[int] = None,
    gateway_fee_bps: Optional[int] = None,
    gateway_fixed_fee: Optional[int] = None
) -> FeeBreakdown:
    """
    Split a captured amount into platform fee, gateway fee and traveler net.

    platform_fee + gateway_fee + net_amount == amount, and net_amount is
    never negative: on tiny amounts the gateway fee is capped.
    """
    if amount < 0:
        raise ValueError("Amount must not be negative")

    platform_fee_bps = settings.platform_fee_bps if platform_fee_bps is None else platform_fee_bps
    gateway_fee_bps = settings.gateway_fee_bps if gateway_fee_bps is None else gateway_fee_bps
    gateway_fixed_fee = settings.gateway_fixed_fee if gateway_fixed_fee is None else gateway_fixed_fee

    platform_fee = apply_basis_points(amount, platform_fee_bps)
    gateway_fee = apply_basis_points(amount, gateway_fee_bps) + gateway_fixed_fee
    gateway_fee = min(gateway_fee, amount - platform_fee)

    return FeeBreakdown(
        amount=amount,
        platform_fee=platform_fee,
        gateway_fee=gateway_fee,
        net_amount=amount - platform_fee - gateway_fee,
    )

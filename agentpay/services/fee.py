"""
Fee service for sale fee splits and micro-unit arithmetic.

Fee Structure:
- Platform keeps platform_fee_percent of every sale (default 20%)
- Seller receives the remainder
- earn_pool_percent of monthly platform fees is pooled back to sellers

All amounts are handled as integer micro-units (USDC has 6 decimals) so
platform + seller always equals the price exactly.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

MICRO_UNITS = 1_000_000
USDC_DECIMALS = 6
USDC_QUANTUM = Decimal("0.000001")

AmountLike = Union[str, int, float, Decimal]


def to_micro(amount: AmountLike) -> int:
    """Convert a decimal USDC amount to integer micro-units, rounding half up."""
    value = Decimal(str(amount)) * MICRO_UNITS
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micro(micro: int) -> Decimal:
    """Convert integer micro-units back to a 6-decimal USDC amount."""
    return (Decimal(micro) / MICRO_UNITS).quantize(USDC_QUANTUM)


def percent_of(micro: int, percent: AmountLike) -> int:
    """round(micro * percent / 100) in integer micro-units."""
    value = Decimal(micro) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def proportional(total: int, part: int, whole: int) -> int:
    """round(total * part / whole) using exact integer arithmetic, 0 when whole is 0."""
    if whole <= 0:
        return 0
    numerator = total * part
    return (2 * numerator + whole) // (2 * whole)


@dataclass(frozen=True)
class FeeSplit:
    """Platform/seller split of a price, in micro-units."""
    price_micro: int
    platform_micro: int
    seller_micro: int
    platform_percent: Decimal

    @property
    def price(self) -> Decimal:
        return from_micro(self.price_micro)

    @property
    def platform_amount(self) -> Decimal:
        return from_micro(self.platform_micro)

    @property
    def seller_amount(self) -> Decimal:
        return from_micro(self.seller_micro)

    @property
    def seller_percent(self) -> Decimal:
        return Decimal(100) - self.platform_percent


def calculate_fee_split(price: AmountLike, platform_fee_percent: AmountLike) -> FeeSplit:
    """
    Split a sale price between the platform and the seller.

    Args:
        price: Sale price in USDC (decimal amount, string preferred for precision)
        platform_fee_percent: Platform share (e.g., 20 for 20%)

    Returns:
        FeeSplit where platform_micro + seller_micro == price_micro
    """
    percent = Decimal(str(platform_fee_percent))
    if percent < 0 or percent > 100:
        raise ValueError(f"Fee percent out of range: {percent}")

    price_micro = to_micro(price)
    if price_micro < 0:
        raise ValueError("Price cannot be negative")

    platform_micro = percent_of(price_micro, percent)
    # Seller is the remainder, never rounded on its own
    seller_micro = price_micro - platform_micro

    return FeeSplit(
        price_micro=price_micro,
        platform_micro=platform_micro,
        seller_micro=seller_micro,
        platform_percent=percent,
    )

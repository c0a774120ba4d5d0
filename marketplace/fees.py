"""
fees.py - Tiered Platform Fee Policy

=== FEE MODEL ===

A fee is the sum of up to three basis-point terms of the sale price:

    base     = price * platform_fee_bps   / 10000
    + price * HIGH_VALUE_FEE_BPS / 10000     if the listing is high-value
    + price * premium_fee_bps    / 10000     if the listing is in PREMIUM_CATEGORY

Each term is truncated toward zero at the token's precision before summing,
which keeps the fee non-decreasing in price for a fixed tier.

The fee is computed synchronously inside a purchase from the terms frozen at
listing creation and the schedule in force at that moment. It is never stored
against the listing, so a later schedule change cannot alter it retroactively.

=== PURE FUNCTION ===

    calculate_fee(price, category, is_high_value, schedule, decimal_places) -> Decimal

Examples (default schedule):
    price=1000,  OTHER,   not high-value  -> 25
    price=20000, PREMIUM, high-value      -> 500 + 200 + 1000 = 1700
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN
from typing import Any, Optional

from .core import (
    Category, PREMIUM_CATEGORY, ValidationError,
    BPS_DENOMINATOR, DEFAULT_PLATFORM_FEE_BPS, MAX_PLATFORM_FEE_BPS,
    HIGH_VALUE_FEE_BPS, DEFAULT_PREMIUM_FEE_BPS, MAX_PREMIUM_FEE_BPS,
    to_amount,
)


def validate_bps(value: Any, ceiling: int, name: str) -> int:
    """Return value as an int in [0, ceiling] or raise ValidationError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of basis points, got {value!r}")
    if value < 0 or value > ceiling:
        raise ValidationError(f"{name} must be between 0 and {ceiling}, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class FeeSchedule:
    """
    Basis-point rates in force for new purchases.

    Immutable: the registry swaps in a new schedule when an administrator
    changes a rate, so a purchase that already read the schedule is unaffected.
    """
    platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS
    premium_fee_bps: int = DEFAULT_PREMIUM_FEE_BPS
    high_value_fee_bps: int = HIGH_VALUE_FEE_BPS

    def __post_init__(self):
        validate_bps(self.platform_fee_bps, MAX_PLATFORM_FEE_BPS, "platform_fee_bps")
        validate_bps(self.premium_fee_bps, MAX_PREMIUM_FEE_BPS, "premium_fee_bps")
        validate_bps(self.high_value_fee_bps, BPS_DENOMINATOR, "high_value_fee_bps")

    def with_platform_fee(self, bps: int) -> 'FeeSchedule':
        return replace(self, platform_fee_bps=bps)

    def with_premium_fee(self, bps: int) -> 'FeeSchedule':
        return replace(self, premium_fee_bps=bps)


DEFAULT_FEE_SCHEDULE = FeeSchedule()


def bps_portion(amount: Decimal, bps: int, decimal_places: Optional[int] = None) -> Decimal:
    """amount * bps / 10000, truncated to decimal_places when given."""
    portion = amount * bps / BPS_DENOMINATOR
    if decimal_places is None:
        return portion
    return portion.quantize(Decimal(10) ** -decimal_places, rounding=ROUND_DOWN)


def calculate_fee(
    price: Any,
    category: Any,
    is_high_value: bool,
    schedule: Optional[FeeSchedule] = None,
    decimal_places: Optional[int] = None,
) -> Decimal:
    """
    Compute the platform fee for a sale.

    Args:
        price: Sale price (non-negative)
        category: Category or its string value
        is_high_value: High-value flag captured at listing creation
        schedule: Rates to apply (default: DEFAULT_FEE_SCHEDULE)
        decimal_places: Token precision for truncating each term (None = exact)

    Returns:
        Fee amount as Decimal

    Raises:
        ValidationError: If price is negative or not a number, or category is unknown
    """
    amount = to_amount(price)
    if amount < 0:
        raise ValidationError(f"price must be non-negative, got {amount}")
    category = Category.parse(category)
    schedule = schedule or DEFAULT_FEE_SCHEDULE

    fee = bps_portion(amount, schedule.platform_fee_bps, decimal_places)
    if is_high_value:
        fee += bps_portion(amount, schedule.high_value_fee_bps, decimal_places)
    if category == PREMIUM_CATEGORY:
        fee += bps_portion(amount, schedule.premium_fee_bps, decimal_places)
    return fee

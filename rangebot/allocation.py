"""
Two-asset split for seeding a concentrated position, plus the liquidity
conversions used to size mints and value existing positions.
"""

import logging
import math
from decimal import Decimal, getcontext

from rangebot.errors import InvalidRange
from rangebot.models import AllocationResult

getcontext().prec = 40

logger = logging.getLogger(__name__)

Q96 = 2**96

# Default dust thresholds, in whole tokens
MIN_BASE_AMOUNT = 0.01
MIN_QUOTE_AMOUNT = 5.0


def compute_optimal_amounts(
    lower_price: float,
    upper_price: float,
    current_price: float,
    total_value: float,
    min_base_amount: float = MIN_BASE_AMOUNT,
    min_quote_amount: float = MIN_QUOTE_AMOUNT,
) -> AllocationResult:
    """Split total_value (in quote) between base and quote for a range.

    Below the range everything is quote, above it everything is base. Inside,
    the quote share is (sqrt(upper) - sqrt(current)) / (sqrt(upper) - sqrt(lower)).
    A leg that comes out below its dust threshold is dropped and its value
    moved to the other leg.
    """
    if upper_price <= lower_price:
        raise InvalidRange(f"upper price {upper_price} must exceed lower price {lower_price}")
    if lower_price <= 0 or current_price <= 0:
        raise InvalidRange(
            f"prices must be positive (lower={lower_price}, current={current_price})"
        )
    if total_value < 0:
        raise ValueError(f"total value must not be negative, got {total_value}")

    base_amount = 0.0
    quote_amount = 0.0

    if current_price <= lower_price:
        quote_amount = total_value
    elif current_price >= upper_price:
        base_amount = total_value / current_price
    else:
        sqrt_price = math.sqrt(current_price)
        sqrt_lower = math.sqrt(lower_price)
        sqrt_upper = math.sqrt(upper_price)
        weight = (sqrt_upper - sqrt_price) / (sqrt_upper - sqrt_lower)
        quote_amount = total_value * weight
        base_amount = (total_value / current_price) * (1 - weight)

        # Dust elimination only applies to the mixed case: the one-sided cases
        # above already hold everything in the leg the range requires.
        if base_amount < min_base_amount:
            base_amount = 0.0
            quote_amount = total_value
        elif quote_amount < min_quote_amount:
            quote_amount = 0.0
            base_amount = total_value / current_price

    logger.debug(
        "Optimal amounts: range=%.6f-%.6f price=%.6f value=%.6f -> base=%.8f quote=%.6f",
        lower_price,
        upper_price,
        current_price,
        total_value,
        base_amount,
        quote_amount,
    )
    return AllocationResult(base_amount=base_amount, quote_amount=quote_amount)


# ----------------------------------------------------------------------
# Liquidity math (raw token units, Q64.96 sqrt prices)
# ----------------------------------------------------------------------


def sqrt_price_x96_at_tick(tick: int) -> int:
    """sqrt(1.0001^tick) * 2^96."""
    return int(Decimal("1.0001") ** (Decimal(tick) / 2) * Q96)


def sqrt_price_x96_to_price(sqrt_price_x96: int, decimal_shift: int = 0) -> float:
    """Human price (quote per base) from a Q64.96 sqrt price.

    Formula: price = (sqrtPriceX96 / 2^96)^2 * 10^decimal_shift
    """
    sqrt_price = Decimal(sqrt_price_x96) / Decimal(Q96)
    return float(sqrt_price**2 * Decimal(10) ** decimal_shift)


def _liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    intermediate = sqrt_a * sqrt_b // Q96
    return amount0 * intermediate // (sqrt_b - sqrt_a)


def _liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    return amount1 * Q96 // (sqrt_b - sqrt_a)


def liquidity_for_amounts(
    sqrt_price_x96: int, sqrt_a: int, sqrt_b: int, amount0: int, amount1: int
) -> int:
    """Largest liquidity that amount0/amount1 can fund at the current price."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_a == sqrt_b:
        raise InvalidRange("tick range has zero width")

    if sqrt_price_x96 <= sqrt_a:
        return _liquidity_for_amount0(sqrt_a, sqrt_b, amount0)
    if sqrt_price_x96 < sqrt_b:
        liquidity0 = _liquidity_for_amount0(sqrt_price_x96, sqrt_b, amount0)
        liquidity1 = _liquidity_for_amount1(sqrt_a, sqrt_price_x96, amount1)
        return min(liquidity0, liquidity1)
    return _liquidity_for_amount1(sqrt_a, sqrt_b, amount1)


def amounts_for_liquidity(
    sqrt_price_x96: int, sqrt_a: int, sqrt_b: int, liquidity: int
) -> tuple[int, int]:
    """Raw (amount0, amount1) held by `liquidity` at the current price."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_a == sqrt_b or liquidity <= 0:
        return 0, 0

    amount0 = 0
    amount1 = 0
    if sqrt_price_x96 <= sqrt_a:
        amount0 = liquidity * Q96 * (sqrt_b - sqrt_a) // sqrt_b // sqrt_a
    elif sqrt_price_x96 < sqrt_b:
        amount0 = liquidity * Q96 * (sqrt_b - sqrt_price_x96) // sqrt_b // sqrt_price_x96
        amount1 = liquidity * (sqrt_price_x96 - sqrt_a) // Q96
    else:
        amount1 = liquidity * (sqrt_b - sqrt_a) // Q96
    return amount0, amount1

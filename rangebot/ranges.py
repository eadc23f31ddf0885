"""
Price window and tick boundary math.

Ticks follow the CLMM convention price = 1.0001^tick * 10^decimal_shift, where
decimal_shift = base_decimals - quote_decimals turns raw ratios into human
prices (quote per base).
"""

import logging
import math

from rangebot.errors import InvalidConfiguration, InvalidRange
from rangebot.models import PriceRange, TickRange

logger = logging.getLogger(__name__)

TICK_BASE = 1.0001
MIN_TICK = -887272
MAX_TICK = 887272

# log(price) noise tolerated before a value is treated as an exact tick
_TICK_EPSILON = 1e-6


def compute_range(current_price: float, width_percent: float) -> PriceRange:
    """Symmetric window of +/- width_percent around the current price."""
    if width_percent <= 0:
        raise InvalidConfiguration("width_percent must be greater than 0")
    if width_percent >= 100:
        raise InvalidConfiguration("width_percent must be below 100")
    if current_price <= 0:
        raise InvalidRange(f"current price must be positive, got {current_price}")

    fraction = width_percent / 100
    return PriceRange(
        lower_bound=current_price * (1 - fraction),
        upper_bound=current_price * (1 + fraction),
    )


def tick_to_price(tick: int, decimal_shift: int = 0) -> float:
    return TICK_BASE**tick * 10**decimal_shift


def align_tick(tick: float, tick_spacing: int, round_up: bool = False) -> int:
    """Snap a tick onto the spacing grid.

    Lower bounds round down and upper bounds round up, so alignment can only
    widen a range. Exact multiples come back unchanged.
    """
    if tick_spacing < 1:
        raise InvalidConfiguration(f"tick spacing must be positive, got {tick_spacing}")
    steps = tick / tick_spacing
    steps = math.ceil(steps) if round_up else math.floor(steps)
    return int(steps) * tick_spacing


def price_to_tick(
    price: float, tick_spacing: int, round_up: bool = False, decimal_shift: int = 0
) -> int:
    """Map a price to a tick boundary aligned to tick_spacing.

    round_up=False is for a lower bound, round_up=True for an upper bound.
    A log value within 1e-6 of an integer tick is taken as that tick before
    rounding, so a price a hair below tick_to_price(t) still maps to t. The
    floor and ceil guarantees hold against that snapped value.
    """
    if price <= 0:
        raise InvalidRange(f"price must be positive, got {price}")

    raw = math.log(price / 10**decimal_shift) / math.log(TICK_BASE)
    nearest = round(raw)
    if abs(raw - nearest) < _TICK_EPSILON:
        raw = nearest

    tick = align_tick(raw, tick_spacing, round_up=round_up)
    return _clamp_to_usable(tick, tick_spacing)


def to_tick_range(
    price_range: PriceRange, tick_spacing: int, decimal_shift: int = 0
) -> TickRange:
    """Outward-rounded tick boundaries for a price window."""
    if price_range.upper_bound <= price_range.lower_bound:
        raise InvalidRange(
            f"upper bound {price_range.upper_bound} must exceed lower bound "
            f"{price_range.lower_bound}"
        )

    lower = price_to_tick(
        price_range.lower_bound, tick_spacing, round_up=False, decimal_shift=decimal_shift
    )
    upper = price_to_tick(
        price_range.upper_bound, tick_spacing, round_up=True, decimal_shift=decimal_shift
    )
    if upper <= lower:
        # Both ends clamped together; widen away from whichever limit they hit
        _, max_usable = _usable_bounds(tick_spacing)
        if lower + tick_spacing <= max_usable:
            upper = lower + tick_spacing
        else:
            upper = max_usable
            lower = max_usable - tick_spacing

    logger.debug(
        "Price range %.6f-%.6f -> ticks [%d, %d] (spacing=%d)",
        price_range.lower_bound,
        price_range.upper_bound,
        lower,
        upper,
        tick_spacing,
    )
    return TickRange(lower_tick=lower, upper_tick=upper)


def _usable_bounds(tick_spacing: int) -> tuple[int, int]:
    min_usable = -(-MIN_TICK // tick_spacing) * tick_spacing
    max_usable = (MAX_TICK // tick_spacing) * tick_spacing
    return min_usable, max_usable


def _clamp_to_usable(tick: int, tick_spacing: int) -> int:
    min_usable, max_usable = _usable_bounds(tick_spacing)
    return max(min_usable, min(max_usable, tick))

"""
Fixed-point price helpers.

Prices are integers with 18 fractional digits. Feed readings arrive with their
own decimal precision and are rescaled here before the engine uses them.
"""
from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, localcontext

PRICE_DECIMALS = 18
PRICE_SCALE = 10 ** PRICE_DECIMALS
BPS_DENOMINATOR = 10_000


def normalize_price(price: int, feed_decimals: int) -> int:
    """
    Rescale a feed price to 18 fractional digits.

    Scaling down uses floor division, so precision beyond 18 digits is
    truncated toward negative infinity.

    Args:
        price: Raw integer price as reported by the feed
        feed_decimals: Fractional digits of the raw price

    Returns:
        Price with 18 fractional digits
    """
    if feed_decimals < 0:
        raise ValueError(f"feed_decimals must be >= 0, got {feed_decimals}")
    if feed_decimals == PRICE_DECIMALS:
        return price
    if feed_decimals < PRICE_DECIMALS:
        return price * 10 ** (PRICE_DECIMALS - feed_decimals)
    return price // 10 ** (feed_decimals - PRICE_DECIMALS)


def trailing_stop_price(price: int, distance_bps: int) -> int:
    """Stop price trailing ``price`` by ``distance_bps`` (floor division)."""
    trailing_amount = price * distance_bps // BPS_DENOMINATOR
    return price - trailing_amount


def to_fixed(value: Decimal | str | int | float, decimals: int = PRICE_DECIMALS) -> int:
    """Convert a human-readable number to a fixed-point integer (floored)."""
    with localcontext() as ctx:
        ctx.prec = 78
        scaled = Decimal(str(value)) * (Decimal(10) ** decimals)
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_fixed(value: int, decimals: int = PRICE_DECIMALS) -> Decimal:
    """Convert a fixed-point integer back to a Decimal."""
    with localcontext() as ctx:
        ctx.prec = 78
        return Decimal(value) / (Decimal(10) ** decimals)

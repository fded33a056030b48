"""
Impermanent loss for a 50/50 constant-product liquidity position.

    IL(r) = 2 * sqrt(r) / (1 + r) - 1,   r = current_price / entry_price

Returned as a percentage (<= 0).  The reference price is always the
position's original entry price.
"""
import math


def calculate_il(entry_price: float, current_price: float) -> float:
    """IL percentage versus holding, e.g. -5.72 for a 2x price move."""
    if entry_price <= 0 or current_price <= 0:
        raise ValueError(
            f"Prices must be positive, got entry={entry_price} current={current_price}"
        )
    ratio = current_price / entry_price
    return (2.0 * math.sqrt(ratio) / (1.0 + ratio) - 1.0) * 100.0


def apply_il(value: float, il_pct: float) -> float:
    """Position value after an IL percentage is applied."""
    return value * (1.0 + il_pct / 100.0)


def calculate_il_for_price_change(price_change_pct: float) -> float:
    """IL for a relative move, e.g. ``calculate_il_for_price_change(100)`` for 2x."""
    ratio = 1.0 + price_change_pct / 100.0
    if ratio <= 0:
        raise ValueError(f"Price change must be above -100%, got {price_change_pct}")
    return calculate_il(1.0, ratio)

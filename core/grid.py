"""
Grid ladder generation + spacing helpers.

Long levels below the center:  center * (1 - s)^i
Short levels above the center: center * (1 + s)^i
"""
import numpy as np

from core.risk import check_spacing_profitability
from engine.types import GridLevel, SIDE_LONG, SIDE_SHORT

# Spacing multipliers applied on rebuild, by ATR% volatility bucket
VOLATILITY_SPACING_SCALE = {
    'low': 1.0,
    'medium': 1.0,
    'high': 1.25,
    'extreme': 1.5,
}


def generate_geometric_grid_levels(center_price: float, spacing_pct: float,
                                   long_count: int, short_count: int,
                                   precision: int = 2) -> tuple:
    """
    Geometric (compounding) ladder prices.

    Returns:
        (long_prices, short_prices), each ordered from the center outward.

    Example: center 50000, 1% → longs 49500.00, 49005.00; shorts 50500.00, 51005.00
    """
    s = spacing_pct / 100.0
    long_prices = np.array(
        [round(center_price * (1.0 - s) ** i, precision) for i in range(1, long_count + 1)],
        dtype=np.float64)
    short_prices = np.array(
        [round(center_price * (1.0 + s) ** i, precision) for i in range(1, short_count + 1)],
        dtype=np.float64)
    return long_prices, short_prices


def split_level_count(level_count: int) -> tuple:
    """(long_count, short_count): floor(n/2) long, remainder short."""
    half = level_count // 2
    return half, level_count - half


def build_grid(config, created_at: float = 0.0, start_id: int = 0,
               generation: int = 0, cost=None) -> list:
    """
    Expand a GridConfig into a full ladder of pending, virtual GridLevels.

    Deterministic: same config → same prices, ids and order. Levels are
    returned sorted by descending price and ids are assigned in that order
    starting at `start_id`.

    When a CostConfig is given the spacing must clear the round-trip cost
    by min_profit_after_fees_pct, otherwise UnprofitableSpacing is raised.
    """
    if cost is not None:
        check_spacing_profitability(config.spacing_pct, cost.round_trip_cost_pct,
                                    config.min_profit_after_fees_pct)

    long_count, short_count = split_level_count(config.level_count)
    long_prices, short_prices = generate_geometric_grid_levels(
        config.center_price, config.spacing_pct, long_count, short_count,
        config.price_precision)

    size_notional = config.size_notional
    rows = [(p, SIDE_SHORT, i + 1) for i, p in enumerate(short_prices)]
    rows += [(p, SIDE_LONG, i + 1) for i, p in enumerate(long_prices)]
    # Descending price; the short/long split around the center keeps this stable
    rows.sort(key=lambda r: -r[0])

    levels = []
    for offset, (price, side, index) in enumerate(rows):
        price = float(price)
        levels.append(GridLevel(
            id=start_id + offset,
            price=price,
            side=side,
            size_notional=size_notional,
            size_base=size_notional / price if price > 0 else 0.0,
            index=index,
            generation=generation,
            created_at=created_at,
        ))
    return levels


def calculate_dynamic_spacing_pct(atr_pct: float, multiplier: float,
                                  min_pct: float = 0.5, max_pct: float = 5.0) -> float:
    """
    ATR-adaptive spacing in percent, clamped.

    Volatility expands → grid widens
    Volatility contracts → grid tightens
    """
    if not np.isfinite(atr_pct) or atr_pct <= 0:
        return min_pct
    return float(min(max(atr_pct * multiplier, min_pct), max_pct))


def scale_spacing_for_volatility(spacing_pct: float, volatility_level: str) -> float:
    """Widen spacing in high / extreme volatility."""
    return spacing_pct * VOLATILITY_SPACING_SCALE.get(volatility_level, 1.0)


def drift_pct(price: float, center_price: float) -> float:
    """Absolute distance of price from the grid center, in percent."""
    if center_price <= 0:
        return 0.0
    return abs(price - center_price) / center_price * 100.0

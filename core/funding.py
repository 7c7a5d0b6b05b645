"""
Funding Rate Module.

Perpetual futures settle funding every 8 hours:
  - Positive rate: Longs pay shorts
  - Negative rate: Shorts pay longs

In backtest the rate is taken from the candle's `fundingRate` column
when present, otherwise from CostConfig.default_funding_rate, and applied
on the first bar at or after each settlement boundary.
"""
import numpy as np

from engine.types import SIDE_LONG

MS_PER_HOUR = 3_600_000


def funding_period(timestamp_ms: float, interval_hours: float = 8.0) -> int:
    """Index of the funding window a timestamp falls into."""
    return int(timestamp_ms // (interval_hours * MS_PER_HOUR))


def is_funding_boundary(prev_ts_ms: float, ts_ms: float,
                        interval_hours: float = 8.0) -> bool:
    """True when a settlement time lies in (prev_ts, ts]."""
    return funding_period(ts_ms, interval_hours) > funding_period(prev_ts_ms, interval_hours)


def apply_funding(position_size: float, mark_price: float,
                  funding_rate: float, side: str) -> float:
    """
    Funding payment for one position. Returns PnL impact.

    Long + positive rate → pay (negative PnL)
    Short + positive rate → receive (positive PnL)
    """
    if abs(position_size) < 1e-12 or not np.isfinite(funding_rate):
        return 0.0

    fee = abs(position_size) * mark_price * funding_rate
    if side == SIDE_LONG:
        return -fee
    return fee

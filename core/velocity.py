"""
Price velocity: rate of change over N bars + panic detection.

Pure NumPy implementation.
"""
import numpy as np

from core.errors import InsufficientData

MOMENTUM_STRONG_UP = 'strong_up'
MOMENTUM_UP = 'up'
MOMENTUM_NEUTRAL = 'neutral'
MOMENTUM_DOWN = 'down'
MOMENTUM_STRONG_DOWN = 'strong_down'


def calculate_roc(close_arr: np.ndarray, period: int = 10) -> np.ndarray:
    """
    ROC% = (close[i] - close[i-period]) / close[i-period] * 100

    First `period` bars are NaN. Needs period + 1 candles.
    """
    n = len(close_arr)
    if n < period + 1:
        raise InsufficientData('ROC', period + 1, n)

    roc = np.full(n, np.nan, dtype=np.float64)
    prev = close_arr[:-period]
    cur = close_arr[period:]
    with np.errstate(divide='ignore', invalid='ignore'):
        roc[period:] = np.where(prev > 0, (cur - prev) / prev * 100.0, 0.0)
    return roc


def is_panic(roc_pct: float, threshold: float = 5.0) -> bool:
    return bool(np.isfinite(roc_pct) and abs(roc_pct) >= threshold)


def classify_momentum(roc_pct: float) -> str:
    if roc_pct > 5:
        return MOMENTUM_STRONG_UP
    if roc_pct > 1:
        return MOMENTUM_UP
    if roc_pct > -1:
        return MOMENTUM_NEUTRAL
    if roc_pct > -5:
        return MOMENTUM_DOWN
    return MOMENTUM_STRONG_DOWN

"""
ATR (Average True Range) + volatility classification.

Pure NumPy implementation.
"""
import numpy as np

from core.errors import InsufficientData

# ATR% buckets used for spacing / SL-TP scaling
VOL_LOW = 'low'
VOL_MEDIUM = 'medium'
VOL_HIGH = 'high'
VOL_EXTREME = 'extreme'

_VOL_BUCKETS = [
    (1.0, VOL_LOW),
    (2.5, VOL_MEDIUM),
    (5.0, VOL_HIGH),
]


def calculate_true_range(high_arr: np.ndarray, low_arr: np.ndarray,
                         close_arr: np.ndarray) -> np.ndarray:
    """
    TR = max(H-L, |H - Prev_Close|, |L - Prev_Close|)

    TR[0] has no previous close and is left as NaN.
    """
    n = len(close_arr)
    tr_arr = np.full(n, np.nan, dtype=np.float64)
    for i in range(1, n):
        hl = high_arr[i] - low_arr[i]
        hc = abs(high_arr[i] - close_arr[i - 1])
        lc = abs(low_arr[i] - close_arr[i - 1])
        tr_arr[i] = max(hl, hc, lc)
    return tr_arr


def calculate_atr(high_arr: np.ndarray, low_arr: np.ndarray,
                  close_arr: np.ndarray, period: int = 14) -> np.ndarray:
    """
    Average True Range with Wilder smoothing.

    Seeded with the simple mean of the first `period` true ranges, then
    ATR = (ATR_prev * (period-1) + TR) / period.

    Bars before the seed are NaN. Needs period + 1 candles.
    """
    n = len(close_arr)
    if n < period + 1:
        raise InsufficientData('ATR', period + 1, n)

    tr_arr = calculate_true_range(high_arr, low_arr, close_arr)
    atr_arr = np.full(n, np.nan, dtype=np.float64)

    atr = float(np.mean(tr_arr[1:period + 1]))
    atr_arr[period] = atr
    for i in range(period + 1, n):
        atr = (atr * (period - 1) + tr_arr[i]) / period
        atr_arr[i] = atr

    return atr_arr


def calculate_atr_pct(atr_arr: np.ndarray, close_arr: np.ndarray) -> np.ndarray:
    """ATR as a percentage of close."""
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(close_arr > 0, atr_arr / close_arr * 100.0, np.nan)


def classify_volatility(atr_pct: float) -> str:
    """Bucket an ATR% reading into low / medium / high / extreme."""
    for upper, level in _VOL_BUCKETS:
        if atr_pct < upper:
            return level
    return VOL_EXTREME

"""
Parabolic SAR (Stop And Reverse) trend tracker.

Tracks an extreme point and an acceleration factor that grows by `step`
on every new extreme, capped at `maximum`. Direction flips when price
crosses the SAR value.

Pure NumPy implementation.
"""
import numpy as np

from core.errors import InsufficientData

TREND_UP = 1
TREND_DOWN = -1


def calculate_parabolic_sar(high_arr: np.ndarray, low_arr: np.ndarray,
                            step: float = 0.02, maximum: float = 0.2) -> tuple:
    """
    Returns:
        (sar, direction, accel) arrays. direction is +1 (up) / -1 (down).

    The first bar seeds an uptrend with SAR at its low.
    """
    n = len(high_arr)
    if n < 2:
        raise InsufficientData('ParabolicSAR', 2, n)

    sar_arr = np.zeros(n, dtype=np.float64)
    dir_arr = np.zeros(n, dtype=np.int8)
    af_arr = np.zeros(n, dtype=np.float64)

    uptrend = True
    sar = float(low_arr[0])
    ep = float(high_arr[0])
    af = step

    sar_arr[0] = sar
    dir_arr[0] = TREND_UP
    af_arr[0] = af

    for i in range(1, n):
        hi = high_arr[i]
        lo = low_arr[i]
        sar = sar + af * (ep - sar)
        j = max(i - 2, 0)

        if uptrend:
            # SAR may not sit above the two prior lows
            sar = min(sar, low_arr[i - 1], low_arr[j])
            if lo < sar:
                uptrend = False
                sar = max(ep, hi)
                ep = lo
                af = step
            elif hi > ep:
                ep = hi
                af = min(af + step, maximum)
        else:
            sar = max(sar, high_arr[i - 1], high_arr[j])
            if hi > sar:
                uptrend = True
                sar = min(ep, lo)
                ep = hi
                af = step
            elif lo < ep:
                ep = lo
                af = min(af + step, maximum)

        sar_arr[i] = sar
        dir_arr[i] = TREND_UP if uptrend else TREND_DOWN
        af_arr[i] = af

    return sar_arr, dir_arr, af_arr


def trend_strength(close: float, sar: float, accel: float,
                   maximum: float = 0.2) -> float:
    """
    0..1 trend strength: distance of price from SAR (×10, capped at 1)
    weighted by how far the acceleration factor has climbed.
    """
    if close <= 0:
        return 0.0
    distance = abs(close - sar) / close
    return min(distance * 10.0, 1.0) * (accel / maximum)

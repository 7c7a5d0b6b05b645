"""
Volume anomaly (spike) detection.

Pure NumPy implementation.
"""
import numpy as np

from core.errors import InsufficientData


def calculate_volume_ratio(volume_arr: np.ndarray, lookback: int = 20) -> np.ndarray:
    """
    Current bar volume / rolling mean volume over the trailing window
    (current bar included). Bars before a full window are NaN.
    """
    n = len(volume_arr)
    if n < lookback:
        raise InsufficientData('VolumeAnomaly', lookback, n)

    ratio = np.full(n, np.nan, dtype=np.float64)
    window_sum = float(np.sum(volume_arr[:lookback]))
    for i in range(lookback - 1, n):
        if i >= lookback:
            window_sum += volume_arr[i] - volume_arr[i - lookback]
        avg = window_sum / lookback
        ratio[i] = volume_arr[i] / avg if avg > 1e-12 else 0.0
    return ratio


def anomaly_strength(ratio: float, threshold: float = 2.0) -> float:
    """
    0 below threshold, otherwise (ratio - thr) / thr capped at 1.

    A bar at exactly 2× the threshold scores 1.0.
    """
    if not np.isfinite(ratio) or ratio < threshold:
        return 0.0
    return min((ratio - threshold) / threshold, 1.0)

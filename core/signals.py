"""
Signal Library: assembles the per-evaluation SignalSnapshot.

`prepare_signals()` computes every indicator array once over a candle
DataFrame; `build_signal_snapshot()` reads one bar out of it. Live and
backtest both go through these two calls.
"""
from dataclasses import dataclass, asdict

import numpy as np

from core.atr import calculate_atr, calculate_atr_pct, classify_volatility
from core.errors import InsufficientData
from core.sar import calculate_parabolic_sar, trend_strength, TREND_UP
from core.velocity import calculate_roc, is_panic, classify_momentum
from core.volume import calculate_volume_ratio, anomaly_strength
from engine.types import SIDE_LONG, SIDE_SHORT


@dataclass(frozen=True)
class SignalSnapshot:
    timestamp: float
    close: float
    trend_direction: str          # 'long' (SAR below price) / 'short'
    trend_strength: float         # 0..1
    sar_value: float
    atr: float
    volatility_pct: float         # ATR as % of close
    volatility_level: str
    volume_ratio: float
    is_volume_anomaly: bool
    volume_anomaly_strength: float
    velocity_pct: float           # ROC over roc_period bars
    momentum: str
    is_panic: bool

    def to_dict(self) -> dict:
        return asdict(self)


def prepare_signals(df, signal_config) -> dict:
    """
    Pre-compute indicator arrays from an OHLCV DataFrame.

    Raises InsufficientData when the frame is shorter than the warmup.
    """
    n = len(df)
    if n < signal_config.warmup:
        raise InsufficientData('signals', signal_config.warmup, n)

    highs = df['high'].values.astype(np.float64)
    lows = df['low'].values.astype(np.float64)
    closes = df['close'].values.astype(np.float64)
    volumes = df['volume'].values.astype(np.float64)

    sar, direction, accel = calculate_parabolic_sar(
        highs, lows, signal_config.sar_step, signal_config.sar_max)
    atr = calculate_atr(highs, lows, closes, signal_config.atr_period)

    return {
        'timestamp': df['timestamp'].values.astype(np.float64),
        'close': closes,
        'sar': sar,
        'sar_direction': direction,
        'sar_accel': accel,
        'atr': atr,
        'atr_pct': calculate_atr_pct(atr, closes),
        'volume_ratio': calculate_volume_ratio(volumes, signal_config.volume_lookback),
        'roc': calculate_roc(closes, signal_config.roc_period),
    }


def build_signal_snapshot(signals: dict, i: int, signal_config) -> SignalSnapshot:
    """
    Snapshot of bar `i`. Raises InsufficientData while any indicator is
    still warming up at that bar.
    """
    if i < signal_config.warmup - 1:
        raise InsufficientData('signals', signal_config.warmup, i + 1)
    for key in ('atr', 'volume_ratio', 'roc'):
        if not np.isfinite(signals[key][i]):
            raise InsufficientData(key, signal_config.warmup, i + 1)

    close = float(signals['close'][i])
    sar = float(signals['sar'][i])
    atr_pct = float(signals['atr_pct'][i])
    roc = float(signals['roc'][i])
    ratio = float(signals['volume_ratio'][i])
    threshold = signal_config.volume_threshold

    return SignalSnapshot(
        timestamp=float(signals['timestamp'][i]),
        close=close,
        trend_direction=SIDE_LONG if signals['sar_direction'][i] == TREND_UP else SIDE_SHORT,
        trend_strength=trend_strength(close, sar, float(signals['sar_accel'][i]),
                                      signal_config.sar_max),
        sar_value=sar,
        atr=float(signals['atr'][i]),
        volatility_pct=atr_pct,
        volatility_level=classify_volatility(atr_pct),
        volume_ratio=ratio,
        is_volume_anomaly=bool(ratio >= threshold),
        volume_anomaly_strength=anomaly_strength(ratio, threshold),
        velocity_pct=roc,
        momentum=classify_momentum(roc),
        is_panic=is_panic(roc, signal_config.panic_threshold_pct),
    )

"""
Grid engine configuration.

Flat dicts; engine.schema.StrategyConfig.from_params() validates
STRATEGY_PARAMS into typed sections and rejects unknown keys.
"""

STRATEGY_PARAMS = {
    # ─── Grid ─────────────────────────────────────────────────
    'symbol': 'BTC/USDT',
    'center_price': 0.0,            # 0 = first price seen
    'level_count': 10,              # Total levels (half long below, half short above)
    'spacing_pct': 1.0,             # Geometric spacing between levels (%)
    'total_capital': 1000.0,
    'leverage': 10.0,
    'min_real_positions': 2,        # Capital-backed levels, hard bounds 2..4
    'max_real_positions': 4,
    'rebalance_threshold_pct': 5.0, # Rebuild when price drifts this far from center
    'min_profit_after_fees_pct': 0.05,
    'price_precision': 2,
    'stop_loss_pct': 3.0,
    'take_profit_pct': 2.0,
    'use_dynamic_sltp': False,      # SL/TP = ATR × multiplier instead of fixed %
    'sl_atr_multiplier': 2.0,
    'tp_atr_multiplier': 1.5,
    'use_adaptive_grid': False,     # Rebuild spacing from ATR%
    'atr_spacing_multiplier': 2.0,

    # ─── Signals ──────────────────────────────────────────────
    'sar_step': 0.02,
    'sar_max': 0.2,
    'atr_period': 14,
    'volume_lookback': 20,
    'volume_threshold': 2.0,        # Volume / average ≥ this = anomaly
    'roc_period': 10,
    'panic_threshold_pct': 5.0,     # |ROC| ≥ this = velocity panic
    'min_trend_strength': 0.0,

    # ─── Risk ─────────────────────────────────────────────────
    'max_capital_utilization_pct': 95.0,
    'max_position_bias_pct': 60.0,
    'min_notional': 10.0,
    'tighten_factor': 0.5,          # Stops move this fraction toward price on anomaly
    'use_trailing_stop': False,
    'liquidation_loss_pct': 90.0,   # Force-close at this % margin loss

    # ─── Costs ────────────────────────────────────────────────
    'taker_fee': 0.0005,            # 0.05% taker (Binance USDM)
    'slippage_bps': 2.0,
    'funding_interval_hours': 8.0,
    'default_funding_rate': 0.0,    # Used when candles carry no fundingRate

    # ─── Oracle ───────────────────────────────────────────────
    'oracle_confidence_threshold': 70.0,
    'oracle_timeout_seconds': 5.0,

    'close_at_end': True,
}

# ─── Live Trading Configuration ─────────────────────────────────
LIVE_CONFIG = {
    # Exchange Connection
    'exchange_id': 'binance',
    'market_type': 'future',         # USDM perpetual futures
    'timeframe': '15m',
    'symbols': ['BTC/USDT'],

    # Cycle
    'interval_seconds': 60,          # One evaluation pass per symbol per interval
    'buffer_size': 200,              # Candles fetched per pass (indicator history)

    # Order Management
    'max_retry_attempts': 3,
    'retry_delay_seconds': 2,

    # State Persistence
    'state_dir': 'data/live_state',
    'log_dir': 'data/live_logs',
    'log_level': 'INFO',

    # Safety
    'dry_run': True,
}

BACKTEST_CONFIG = {
    'coins': ['BTC/USDT', 'ETH/USDT', 'SOL/USDT'],
    'start_date': '2024-01-01',
    'end_date': None,               # None = current date
    'timeframe': '15m',
    'executor': 'process',          # 'process' | 'thread' for multi-coin runs
    'max_workers': None,
    'output_dir': 'data/backtests',
}

# ─── Optimizer Parameter Space ────────────────────────────────
# Used by optimizer.py (optuna TPE). Keys must exist in STRATEGY_PARAMS.
OPTIMIZER_SPACE = {
    'spacing_pct':        {'type': 'float', 'low': 0.3, 'high': 3.0},
    'level_count':        {'type': 'int',   'low': 4,   'high': 20},
    'stop_loss_pct':      {'type': 'float', 'low': 1.0, 'high': 6.0},
    'take_profit_pct':    {'type': 'float', 'low': 0.5, 'high': 4.0},
    'rebalance_threshold_pct': {'type': 'float', 'low': 2.0, 'high': 10.0},
    'max_real_positions': {'type': 'int',   'low': 2,   'high': 4},
    'use_dynamic_sltp':   {'type': 'cat',   'choices': [True, False]},
}

"""
Typed configuration for the grid engine.

config.py keeps the flat default dicts; StrategyConfig.from_params()
validates a flat dict into frozen dataclasses. Unknown and deprecated
keys are rejected instead of silently ignored.
"""
from dataclasses import dataclass, field, fields, replace, asdict

from core.errors import ConfigError

# Keys that older configs carried but which no longer mean anything.
DEPRECATED_KEYS = {
    'aggressiveness': "replaced by the fixed rule hierarchy",
    'ai_aggressiveness': "replaced by oracle_confidence_threshold",
    'aiAggressiveness': "replaced by oracle_confidence_threshold",
}


@dataclass(frozen=True)
class GridConfig:
    """
    Ladder parameters.

    Attributes:
        center_price: 0.0 means "use the first price seen"
        spacing_pct: Geometric spacing between levels, in percent
        level_count: Total levels (floor(n/2) long, rest short)
    """
    symbol: str = 'BTC/USDT'
    center_price: float = 0.0
    level_count: int = 10
    spacing_pct: float = 1.0
    total_capital: float = 1000.0
    leverage: float = 10.0
    min_real_positions: int = 2
    max_real_positions: int = 4
    rebalance_threshold_pct: float = 5.0
    min_profit_after_fees_pct: float = 0.05
    price_precision: int = 2
    stop_loss_pct: float = 3.0
    take_profit_pct: float = 2.0
    use_dynamic_sltp: bool = False
    sl_atr_multiplier: float = 2.0
    tp_atr_multiplier: float = 1.5
    use_adaptive_grid: bool = False
    atr_spacing_multiplier: float = 2.0

    def __post_init__(self):
        if self.level_count < 2:
            raise ConfigError(f"level_count must be >= 2, got {self.level_count}")
        if self.spacing_pct <= 0 or self.spacing_pct >= 100:
            raise ConfigError(f"spacing_pct must be in (0, 100), got {self.spacing_pct}")
        if self.total_capital <= 0:
            raise ConfigError(f"total_capital must be positive, got {self.total_capital}")
        if self.leverage < 1:
            raise ConfigError(f"leverage must be >= 1, got {self.leverage}")
        if not (2 <= self.min_real_positions <= self.max_real_positions <= 4):
            raise ConfigError(
                "real position bounds must satisfy 2 <= min <= max <= 4, got "
                f"min={self.min_real_positions} max={self.max_real_positions}")
        if self.level_count < self.min_real_positions:
            raise ConfigError(
                f"level_count ({self.level_count}) smaller than "
                f"min_real_positions ({self.min_real_positions})")
        if self.center_price < 0:
            raise ConfigError(f"center_price must be >= 0, got {self.center_price}")
        if self.rebalance_threshold_pct <= 0:
            raise ConfigError(
                f"rebalance_threshold_pct must be positive, got {self.rebalance_threshold_pct}")
        if self.stop_loss_pct <= 0 or self.take_profit_pct <= 0:
            raise ConfigError("stop_loss_pct and take_profit_pct must be positive")

    @property
    def size_notional(self) -> float:
        """Per-level notional, fixed at build time."""
        return self.total_capital / self.level_count * self.leverage

    def with_center(self, center_price: float) -> 'GridConfig':
        return replace(self, center_price=center_price)

    def with_spacing(self, spacing_pct: float) -> 'GridConfig':
        return replace(self, spacing_pct=spacing_pct)


@dataclass(frozen=True)
class SignalConfig:
    sar_step: float = 0.02
    sar_max: float = 0.2
    atr_period: int = 14
    volume_lookback: int = 20
    volume_threshold: float = 2.0
    roc_period: int = 10
    panic_threshold_pct: float = 5.0
    min_trend_strength: float = 0.0

    def __post_init__(self):
        if self.atr_period < 1 or self.volume_lookback < 1 or self.roc_period < 1:
            raise ConfigError("indicator periods must be >= 1")
        if not (0 < self.sar_step <= self.sar_max):
            raise ConfigError(
                f"sar_step must be in (0, sar_max], got {self.sar_step}/{self.sar_max}")
        if self.volume_threshold <= 0 or self.panic_threshold_pct <= 0:
            raise ConfigError("volume_threshold and panic_threshold_pct must be positive")

    @property
    def warmup(self) -> int:
        """Candles needed before every indicator has a value."""
        return max(2, self.atr_period + 1, self.volume_lookback, self.roc_period + 1)


@dataclass(frozen=True)
class RiskConfig:
    max_capital_utilization_pct: float = 95.0
    max_position_bias_pct: float = 60.0
    min_notional: float = 10.0
    tighten_factor: float = 0.5
    use_trailing_stop: bool = False
    liquidation_loss_pct: float = 90.0

    def __post_init__(self):
        if not (0 < self.max_capital_utilization_pct <= 100):
            raise ConfigError(
                f"max_capital_utilization_pct must be in (0, 100], got "
                f"{self.max_capital_utilization_pct}")
        if not (0 < self.max_position_bias_pct <= 100):
            raise ConfigError(
                f"max_position_bias_pct must be in (0, 100], got {self.max_position_bias_pct}")
        if not (0 < self.tighten_factor <= 1):
            raise ConfigError(f"tighten_factor must be in (0, 1], got {self.tighten_factor}")
        if self.min_notional < 0:
            raise ConfigError(f"min_notional must be >= 0, got {self.min_notional}")


@dataclass(frozen=True)
class CostConfig:
    taker_fee: float = 0.0005       # fraction per fill
    slippage_bps: float = 2.0
    funding_interval_hours: float = 8.0
    default_funding_rate: float = 0.0

    def __post_init__(self):
        if self.taker_fee < 0 or self.slippage_bps < 0:
            raise ConfigError("fees and slippage must be >= 0")
        if self.funding_interval_hours <= 0:
            raise ConfigError("funding_interval_hours must be positive")

    @property
    def slippage(self) -> float:
        return self.slippage_bps / 10_000.0

    @property
    def round_trip_cost_pct(self) -> float:
        """Entry + exit taker fee and slippage, in percent of notional."""
        return 2.0 * (self.taker_fee + self.slippage) * 100.0


@dataclass(frozen=True)
class StrategyConfig:
    grid: GridConfig = field(default_factory=GridConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    cost: CostConfig = field(default_factory=CostConfig)
    oracle_confidence_threshold: float = 70.0
    oracle_timeout_seconds: float = 5.0
    close_at_end: bool = True

    _SECTIONS = ('grid', 'signals', 'risk', 'cost')

    @classmethod
    def from_params(cls, params: dict) -> 'StrategyConfig':
        """
        Build from a flat params dict (see config.STRATEGY_PARAMS).

        Raises ConfigError on unknown keys, deprecated keys or invalid values.
        """
        section_types = {
            'grid': GridConfig, 'signals': SignalConfig,
            'risk': RiskConfig, 'cost': CostConfig,
        }
        owner = {}
        for name, typ in section_types.items():
            for f in fields(typ):
                owner[f.name] = name
        top_level = {f.name for f in fields(cls)} - set(section_types)

        buckets = {name: {} for name in section_types}
        top = {}
        for key, value in params.items():
            if key in DEPRECATED_KEYS:
                raise ConfigError(f"'{key}' is deprecated: {DEPRECATED_KEYS[key]}")
            if key in owner:
                buckets[owner[key]][key] = value
            elif key in top_level:
                top[key] = value
            else:
                raise ConfigError(f"Unknown config key '{key}'")

        try:
            sections = {name: section_types[name](**kw) for name, kw in buckets.items()}
            cfg = cls(**sections, **top)
        except TypeError as e:
            raise ConfigError(str(e)) from e

        if cfg.oracle_timeout_seconds <= 0:
            raise ConfigError("oracle_timeout_seconds must be positive")
        if not (0 <= cfg.oracle_confidence_threshold <= 100):
            raise ConfigError("oracle_confidence_threshold must be in [0, 100]")
        return cfg

    def to_params(self) -> dict:
        """Flatten back into the dict form accepted by from_params()."""
        params = {}
        for name in self._SECTIONS:
            params.update(asdict(getattr(self, name)))
        params['oracle_confidence_threshold'] = self.oracle_confidence_threshold
        params['oracle_timeout_seconds'] = self.oracle_timeout_seconds
        params['close_at_end'] = self.close_at_end
        return params

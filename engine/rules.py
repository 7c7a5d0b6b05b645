"""
Decision hierarchy as an ordered list of predicate → action rules.

Rules run in list order. An *override* rule that fires ends evaluation
(later rules never see the snapshot); a *modifier* rule only adds
parameters to the decision. With no override the action is HOLD.

Default order:
  1. velocity_panic      override → FLATTEN_OR_CLUSTER
  2. volume_anomaly      override → TIGHTEN_RISK
  3. trend_bias          modifier → preferred side
  4. volatility_scaling  modifier → next rebuild spacing, SL/TP distances
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

from core.errors import REASON_RISK_TIGHTENED, REASON_SIDE_BLOCKED
from core.grid import calculate_dynamic_spacing_pct, scale_spacing_for_volatility
from engine.types import (
    ACTION_HOLD, ACTION_FLATTEN_OR_CLUSTER, ACTION_TIGHTEN_RISK,
    SIDE_LONG, SIDE_SHORT, SIDES, opposite,
)


@dataclass(frozen=True)
class RuleOutcome:
    rule: str
    reason: str
    action: Optional[str] = None
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    name: str
    evaluate: Callable       # (snapshot, config) -> RuleOutcome | None
    override: bool = False


@dataclass
class Decision:
    """Auditable result of one pass through the rule list."""
    action: str = ACTION_HOLD
    source: str = 'rules'
    preferred_side: Optional[str] = None
    cluster_side: Optional[str] = None
    spacing_pct: Optional[float] = None
    sl_distance: Optional[float] = None
    tp_distance: Optional[float] = None
    tighten_factor: Optional[float] = None
    confidence: Optional[float] = None
    fired: list = field(default_factory=list)
    reasons: list = field(default_factory=list)

    @property
    def blocked_sides(self) -> dict:
        """side → rejection reason for new exposure this pass."""
        if self.action == ACTION_TIGHTEN_RISK:
            return {side: REASON_RISK_TIGHTENED for side in SIDES}
        if self.action == ACTION_FLATTEN_OR_CLUSTER and self.cluster_side in SIDES:
            return {opposite(self.cluster_side): REASON_SIDE_BLOCKED}
        return {}

    def to_dict(self) -> dict:
        return {
            'action': self.action, 'source': self.source,
            'preferred_side': self.preferred_side, 'cluster_side': self.cluster_side,
            'spacing_pct': self.spacing_pct, 'sl_distance': self.sl_distance,
            'tp_distance': self.tp_distance, 'tighten_factor': self.tighten_factor,
            'confidence': self.confidence,
            'fired': list(self.fired), 'reasons': list(self.reasons),
        }


# ─── Rules ─────────────────────────────────────────────────────

def velocity_panic(snap, config) -> Optional[RuleOutcome]:
    """Fast move ≥ panic threshold: cut to min real levels, cluster with the move's reversal side."""
    if not snap.is_panic:
        return None
    # Panic down → buy the dip (cluster long); panic up → cluster short
    cluster = SIDE_LONG if snap.velocity_pct < 0 else SIDE_SHORT
    return RuleOutcome(
        rule='velocity_panic',
        action=ACTION_FLATTEN_OR_CLUSTER,
        reason=f"ROC {snap.velocity_pct:+.2f}% beyond ±{config.signals.panic_threshold_pct}%",
        params={'cluster_side': cluster},
    )


def volume_anomaly(snap, config) -> Optional[RuleOutcome]:
    if not snap.is_volume_anomaly:
        return None
    return RuleOutcome(
        rule='volume_anomaly',
        action=ACTION_TIGHTEN_RISK,
        reason=f"volume {snap.volume_ratio:.2f}x average",
        params={'tighten_factor': config.risk.tighten_factor},
    )


def trend_bias(snap, config) -> Optional[RuleOutcome]:
    if snap.trend_strength < config.signals.min_trend_strength:
        return None
    return RuleOutcome(
        rule='trend_bias',
        reason=f"SAR trend {snap.trend_direction} (strength {snap.trend_strength:.2f})",
        params={'preferred_side': snap.trend_direction},
    )


def volatility_scaling(snap, config) -> Optional[RuleOutcome]:
    grid = config.grid
    if grid.use_adaptive_grid:
        spacing = calculate_dynamic_spacing_pct(snap.volatility_pct, grid.atr_spacing_multiplier)
    else:
        spacing = scale_spacing_for_volatility(grid.spacing_pct, snap.volatility_level)

    params = {'spacing_pct': spacing}
    if grid.use_dynamic_sltp and snap.atr > 0:
        params['sl_distance'] = snap.atr * grid.sl_atr_multiplier
        params['tp_distance'] = snap.atr * grid.tp_atr_multiplier
    return RuleOutcome(
        rule='volatility_scaling',
        reason=f"ATR {snap.volatility_pct:.2f}% ({snap.volatility_level}) → spacing {spacing:.3f}%",
        params=params,
    )


DEFAULT_RULES = (
    Rule('velocity_panic', velocity_panic, override=True),
    Rule('volume_anomaly', volume_anomaly, override=True),
    Rule('trend_bias', trend_bias),
    Rule('volatility_scaling', volatility_scaling),
)


class RuleEngine:

    def __init__(self, rules=DEFAULT_RULES):
        self.rules = tuple(rules)

    def evaluate(self, snapshot, config) -> Decision:
        decision = Decision()
        for rule in self.rules:
            outcome = rule.evaluate(snapshot, config)
            if outcome is None:
                continue
            decision.fired.append(outcome.rule)
            decision.reasons.append(outcome.reason)
            for key, value in outcome.params.items():
                setattr(decision, key, value)
            if rule.override and outcome.action is not None:
                decision.action = outcome.action
                if outcome.action == ACTION_FLATTEN_OR_CLUSTER:
                    decision.preferred_side = outcome.params.get('cluster_side')
                break
        return decision

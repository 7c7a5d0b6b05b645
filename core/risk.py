"""
Risk Management: leverage tiers, exposure checks, the Risk Gate.

Every proposed state transition goes through RiskGate.validate() before
the ledger applies it. Rules run in a fixed order and the first failing
rule wins.
"""
import logging
from typing import Optional

from core.errors import (
    UnprofitableSpacing,
    REASON_LEVERAGE_CAP, REASON_CAPITAL_UTILIZATION, REASON_POSITION_BIAS,
    REASON_BELOW_MIN_SIZE, REASON_UNPROFITABLE_SPACING,
)
from engine.types import (
    ACTION_OPEN, ACTION_BUILD, ACTION_REBALANCE, SIDE_LONG,
)

logger = logging.getLogger('risk')

# ─── Max leverage per base asset ──────────────────────────────
# Anything not listed falls back to DEFAULT_MAX_LEVERAGE.
LEVERAGE_TIERS = {
    40: ('BTC', 'ETH', 'SOL', 'XRP'),
    20: ('DOGE', 'SUI', 'WLD', 'LTC', 'LINK', 'AVAX', 'HYPE', 'TIA', 'APT', 'NEAR'),
    10: ('OP', 'ARB', 'LDO', 'TON', 'JUP', 'SEI', 'BNB', 'DOT'),
    3:  ('USDC', 'USDT', 'STABLE', 'MON', 'LIT', 'XPL'),
}
DEFAULT_MAX_LEVERAGE = 3

_LEVERAGE_BY_ASSET = {
    asset: cap for cap, assets in LEVERAGE_TIERS.items() for asset in assets
}


def base_asset(symbol: str) -> str:
    """'BTC/USDT:USDT' → 'BTC', 'ethusdt' → 'ETH', 'SOL' → 'SOL'."""
    s = symbol.upper().split(':')[0]
    if '/' in s:
        return s.split('/')[0]
    for quote in ('USDT', 'USDC', 'USD'):
        if s.endswith(quote) and len(s) > len(quote):
            return s[:-len(quote)]
    return s


def get_leverage_limit(symbol: str) -> int:
    return _LEVERAGE_BY_ASSET.get(base_asset(symbol), DEFAULT_MAX_LEVERAGE)


def position_bias_pct(long_notional: float, short_notional: float) -> float:
    """|long - short| / (long + short) * 100, 0 when flat."""
    total = long_notional + short_notional
    if total <= 1e-12:
        return 0.0
    return abs(long_notional - short_notional) / total * 100.0


def capital_utilization_pct(margin_used: float, total_capital: float) -> float:
    if total_capital <= 0:
        return float('inf')
    return margin_used / total_capital * 100.0


def check_spacing_profitability(spacing_pct: float, round_trip_cost_pct: float,
                                min_profit_after_fees_pct: float = 0.0):
    """
    Raise UnprofitableSpacing unless one grid step earns at least
    `min_profit_after_fees_pct` after the round-trip fee + slippage.

    Example: 0.1% spacing vs 0.12% round trip → rejected.
    """
    edge = spacing_pct - round_trip_cost_pct
    if edge <= 0 or edge < min_profit_after_fees_pct:
        raise UnprofitableSpacing(
            f"spacing {spacing_pct:.4f}% vs round-trip cost {round_trip_cost_pct:.4f}% "
            f"(edge {edge:.4f}% < required {min_profit_after_fees_pct:.4f}%)")


class RiskDecision:
    """Accept or Reject(reason)."""

    __slots__ = ('accepted', 'reason', 'detail')

    def __init__(self, accepted: bool, reason: str = '', detail: str = ''):
        self.accepted = accepted
        self.reason = reason
        self.detail = detail

    @classmethod
    def accept(cls) -> 'RiskDecision':
        return cls(True)

    @classmethod
    def reject(cls, reason: str, detail: str = '') -> 'RiskDecision':
        return cls(False, reason, detail)

    def __bool__(self):
        return self.accepted

    def __repr__(self):
        if self.accepted:
            return "RiskDecision(accept)"
        return f"RiskDecision(reject={self.reason}: {self.detail})"


class RiskGate:
    """
    Validates proposed actions against a ledger exposure snapshot.

    Order (first failure wins):
      0. Opens on a side blocked this pass (panic / tighten) are refused
         with the blocking reason
      1. Leverage ≤ tier cap for the symbol
      2. Margin utilization ≤ max_capital_utilization_pct
      3. Long/short bias ≤ max_position_bias_pct (skipped if trend-justified)
      4. Notional ≥ min_notional                → BelowMinimumSize
      5. Spacing beats round-trip cost (build/rebalance only) → UnprofitableSpacing

    Closes are never refused.
    """

    def __init__(self):
        self.rejections = {}

    def validate(self, action, snapshot: dict, config,
                 blocked: Optional[dict] = None) -> RiskDecision:
        """`blocked` maps side → reason for sides closed to new exposure."""
        if blocked and action.kind == ACTION_OPEN and action.side in blocked:
            decision = RiskDecision.reject(
                blocked[action.side], f"new {action.side} exposure blocked this pass")
        else:
            decision = self._evaluate(action, snapshot, config)
        if not decision.accepted:
            self.rejections[decision.reason] = self.rejections.get(decision.reason, 0) + 1
            logger.info(f"[{action.symbol}] {action.kind} {action.side or ''} rejected: "
                        f"{decision.reason} {decision.detail}")
        return decision

    def _evaluate(self, action, snapshot: dict, config) -> RiskDecision:
        if action.kind not in (ACTION_OPEN, ACTION_BUILD, ACTION_REBALANCE):
            return RiskDecision.accept()

        risk = config.risk
        grid = config.grid

        # 1. Leverage tier
        cap = get_leverage_limit(action.symbol or grid.symbol)
        if action.leverage > cap:
            return RiskDecision.reject(
                REASON_LEVERAGE_CAP, f"{action.leverage}x > {cap}x tier cap")

        if action.kind == ACTION_OPEN:
            long_n = snapshot.get('long_notional', 0.0)
            short_n = snapshot.get('short_notional', 0.0)
            margin = snapshot.get('margin_used', 0.0)
            total_capital = snapshot.get('total_capital', grid.total_capital)
            open_count = snapshot.get('open_count', 0)

            # 2. Capital utilization (margin based)
            new_margin = margin + action.notional / max(action.leverage, 1e-9)
            util = capital_utilization_pct(new_margin, total_capital)
            if util > risk.max_capital_utilization_pct:
                return RiskDecision.reject(
                    REASON_CAPITAL_UTILIZATION,
                    f"{util:.1f}% > {risk.max_capital_utilization_pct:.1f}%")

            # 3. Long/short bias
            if action.side == SIDE_LONG:
                long_n += action.notional
            else:
                short_n += action.notional
            if open_count + 1 >= 2 and not action.trend_justified:
                bias = position_bias_pct(long_n, short_n)
                if bias > risk.max_position_bias_pct:
                    return RiskDecision.reject(
                        REASON_POSITION_BIAS,
                        f"{bias:.1f}% > {risk.max_position_bias_pct:.1f}%")

            # 4. Minimum size
            if action.notional < risk.min_notional:
                return RiskDecision.reject(
                    REASON_BELOW_MIN_SIZE,
                    f"${action.notional:.2f} < ${risk.min_notional:.2f}")
            return RiskDecision.accept()

        # 5. Build / rebalance spacing profitability
        spacing = action.spacing_pct if action.spacing_pct is not None else grid.spacing_pct
        try:
            check_spacing_profitability(spacing, config.cost.round_trip_cost_pct,
                                        grid.min_profit_after_fees_pct)
        except UnprofitableSpacing as e:
            return RiskDecision.reject(REASON_UNPROFITABLE_SPACING, e.detail)
        return RiskDecision.accept()

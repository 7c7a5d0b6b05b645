"""
Tests for risk management: leverage tiers, exposure helpers and the Risk Gate.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from core.errors import (
    UnprofitableSpacing,
    REASON_LEVERAGE_CAP, REASON_CAPITAL_UTILIZATION, REASON_POSITION_BIAS,
    REASON_BELOW_MIN_SIZE, REASON_UNPROFITABLE_SPACING, REASON_SIDE_BLOCKED,
)
from core.risk import (
    base_asset, get_leverage_limit, position_bias_pct,
    capital_utilization_pct, check_spacing_profitability, RiskGate,
)
from engine.schema import StrategyConfig
from engine.types import (
    ProposedAction, ACTION_OPEN, ACTION_CLOSE, ACTION_BUILD, ACTION_REBALANCE,
    SIDE_LONG, SIDE_SHORT,
)


def empty_book(capital=1000.0):
    return {'long_notional': 0.0, 'short_notional': 0.0, 'margin_used': 0.0,
            'open_count': 0, 'total_capital': capital}


@pytest.fixture
def config():
    return StrategyConfig.from_params({
        'symbol': 'BTC/USDT', 'total_capital': 1000.0, 'leverage': 10.0,
        'max_capital_utilization_pct': 50.0, 'max_position_bias_pct': 60.0,
        'min_notional': 10.0,
    })


class TestLeverageTiers:
    def test_symbol_parsing(self):
        assert base_asset('BTC/USDT:USDT') == 'BTC'
        assert base_asset('ethusdt') == 'ETH'
        assert base_asset('SOL') == 'SOL'

    def test_tier_lookup(self):
        assert get_leverage_limit('BTC/USDT') == 40
        assert get_leverage_limit('DOGE/USDT:USDT') == 20
        assert get_leverage_limit('ARBUSDT') == 10
        assert get_leverage_limit('UNKNOWN/USDT') == 3


class TestHelpers:
    def test_bias(self):
        assert position_bias_pct(0, 0) == 0.0
        assert position_bias_pct(100, 100) == 0.0
        assert position_bias_pct(100, 0) == pytest.approx(100.0)
        assert position_bias_pct(300, 100) == pytest.approx(50.0)

    def test_utilization(self):
        assert capital_utilization_pct(250, 1000) == pytest.approx(25.0)
        assert capital_utilization_pct(1, 0) == float('inf')

    def test_spacing_profitability(self):
        check_spacing_profitability(1.0, 0.12, 0.05)
        with pytest.raises(UnprofitableSpacing) as exc:
            check_spacing_profitability(0.1, 0.12)
        assert exc.value.reason == REASON_UNPROFITABLE_SPACING
        # Positive edge but below the required margin
        with pytest.raises(UnprofitableSpacing):
            check_spacing_profitability(0.15, 0.12, 0.05)


class TestRiskGate:
    def _open(self, side=SIDE_LONG, notional=1000.0, leverage=10.0, **kw):
        return ProposedAction(kind=ACTION_OPEN, symbol='BTC/USDT', side=side,
                              notional=notional, leverage=leverage, **kw)

    def test_accepts_first_open(self, config):
        assert RiskGate().validate(self._open(), empty_book(), config)

    def test_leverage_cap_checked_first(self, config):
        gate = RiskGate()
        # Also below min size: leverage must still be the reported reason
        d = gate.validate(self._open(notional=1.0, leverage=50), empty_book(), config)
        assert not d
        assert d.reason == REASON_LEVERAGE_CAP
        assert gate.rejections == {REASON_LEVERAGE_CAP: 1}

    def test_utilization(self, config):
        book = empty_book()
        book['margin_used'] = 450.0
        d = RiskGate().validate(self._open(), book, config)
        assert d.reason == REASON_CAPITAL_UTILIZATION

    def test_bias_rejected_without_trend(self, config):
        book = empty_book()
        book.update(long_notional=1000.0, margin_used=100.0, open_count=1)
        d = RiskGate().validate(self._open(), book, config)
        assert d.reason == REASON_POSITION_BIAS

    def test_bias_allowed_when_trend_justified(self, config):
        book = empty_book()
        book.update(long_notional=1000.0, margin_used=100.0, open_count=1)
        assert RiskGate().validate(self._open(trend_justified=True), book, config)

    def test_balanced_second_open_ok(self, config):
        book = empty_book()
        book.update(long_notional=1000.0, margin_used=100.0, open_count=1)
        assert RiskGate().validate(self._open(side=SIDE_SHORT), book, config)

    def test_below_min_size(self, config):
        d = RiskGate().validate(self._open(notional=5.0), empty_book(), config)
        assert d.reason == REASON_BELOW_MIN_SIZE

    def test_build_spacing(self, config):
        gate = RiskGate()
        build = ProposedAction(kind=ACTION_BUILD, symbol='BTC/USDT', leverage=10, spacing_pct=0.1)
        assert gate.validate(build, empty_book(), config).reason == REASON_UNPROFITABLE_SPACING
        rebalance = ProposedAction(kind=ACTION_REBALANCE, symbol='BTC/USDT', leverage=10,
                                   spacing_pct=1.5)
        assert gate.validate(rebalance, empty_book(), config)

    def test_blocked_side_refused_with_its_reason(self, config):
        gate = RiskGate()
        blocked = {SIDE_SHORT: REASON_SIDE_BLOCKED}
        d = gate.validate(self._open(side=SIDE_SHORT), empty_book(), config, blocked=blocked)
        assert d.reason == REASON_SIDE_BLOCKED
        assert gate.validate(self._open(), empty_book(), config, blocked=blocked)
        assert gate.rejections == {REASON_SIDE_BLOCKED: 1}

    def test_close_never_refused(self, config):
        close = ProposedAction(kind=ACTION_CLOSE, symbol='BTC/USDT', leverage=500)
        assert RiskGate().validate(close, empty_book(), config)


if __name__ == "__main__":
    pytest.main([__file__, '-v'])

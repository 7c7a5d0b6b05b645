"""
Tests for performance metrics.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest

from core.metrics import (
    compute_metrics, max_drawdown_pct, periods_per_year, profit_factor,
    sharpe_ratio, DEFAULT_PERIODS_PER_YEAR,
)
from engine.types import ClosedTrade, SIDE_LONG, EXIT_TAKE_PROFIT, EXIT_STOP_LOSS

BAR_MS = 900_000


def trade(pnl, fees=0.0, funding=0.0, reason=EXIT_TAKE_PROFIT, opened=0, closed=BAR_MS):
    return ClosedTrade(
        position_id=0, symbol='BTC/USDT', side=SIDE_LONG,
        entry_price=100.0, exit_price=100.0 + pnl, size=1.0, leverage=10,
        stop_loss=None, take_profit=None, opened_at=opened, closed_at=closed,
        level_id=0, realized_pnl=pnl, fees=fees, funding=funding, exit_reason=reason,
    )


def curve(values):
    return [{'timestamp': i * BAR_MS, 'equity': v} for i, v in enumerate(values)]


class TestDrawdown:
    def test_peak_to_trough(self):
        assert max_drawdown_pct(np.array([100, 120, 90, 130])) == pytest.approx(25.0)

    def test_monotonic_rise(self):
        assert max_drawdown_pct(np.array([100, 101, 102])) == 0.0

    def test_empty(self):
        assert max_drawdown_pct(np.array([])) == 0.0


class TestRatios:
    def test_profit_factor_no_losses_is_inf(self):
        assert profit_factor([10, 5], []) == float('inf')
        assert profit_factor([], []) == 0.0
        assert profit_factor([30], [-10]) == pytest.approx(3.0)

    def test_flat_returns_zero_sharpe(self):
        assert sharpe_ratio(np.zeros(10), 100) == 0.0

    def test_periods_per_year_from_spacing(self):
        ts = [i * BAR_MS for i in range(10)]
        assert periods_per_year(ts) == pytest.approx(96 * 365)
        assert periods_per_year([0]) == DEFAULT_PERIODS_PER_YEAR


class TestComputeMetrics:
    def test_summary(self):
        trades = [trade(30, fees=1.0), trade(-10, fees=1.0, reason=EXIT_STOP_LOSS),
                  trade(20, funding=-2.0)]
        m = compute_metrics(curve([1000, 1029, 1018, 1036]), trades, 1000.0,
                            closes=np.array([100.0, 110.0]))
        assert m['total_return_pct'] == pytest.approx(3.6)
        assert m['buy_hold_return_pct'] == pytest.approx(10.0)
        assert m['total_trades'] == 3
        # Net PnL: 29, -11, 18
        assert m['win_rate'] == pytest.approx(0.6667)
        assert m['profit_factor'] == pytest.approx(round(47 / 11, 3))
        assert m['largest_loss'] == pytest.approx(-11.0)
        assert m['total_fees'] == pytest.approx(2.0)
        assert m['total_funding'] == pytest.approx(-2.0)
        assert m['exit_reasons'] == {EXIT_TAKE_PROFIT: 2, EXIT_STOP_LOSS: 1}
        assert m['final_capital'] == pytest.approx(1036.0)
        assert m['avg_hold_ms'] == BAR_MS

    def test_no_trades(self):
        m = compute_metrics(curve([1000, 1000]), [], 1000.0)
        assert m['total_trades'] == 0
        assert m['win_rate'] == 0.0
        assert m['profit_factor'] == 0.0
        assert m['max_drawdown_pct'] == 0.0

    def test_all_winners_inf_profit_factor(self):
        m = compute_metrics(curve([1000, 1010]), [trade(10)], 1000.0)
        assert m['profit_factor'] == float('inf')
        assert m['calmar_ratio'] == 0.0

    def test_empty_curve_uses_initial_capital(self):
        m = compute_metrics([], [], 500.0)
        assert m['final_capital'] == 500.0
        assert m['total_return_pct'] == 0.0


if __name__ == "__main__":
    pytest.main([__file__, '-v'])

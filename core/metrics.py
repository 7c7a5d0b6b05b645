"""
Performance metrics over an equity curve + closed trade list.

Pure NumPy implementation.
"""
import numpy as np

MS_PER_YEAR = 365 * 24 * 3_600_000
DEFAULT_PERIODS_PER_YEAR = 96 * 365   # 15m bars


def periods_per_year(timestamps) -> float:
    """Annualisation factor from the median spacing of timestamps (ms)."""
    ts = np.asarray(timestamps, dtype=np.float64)
    if len(ts) < 2:
        return float(DEFAULT_PERIODS_PER_YEAR)
    step = float(np.median(np.diff(ts)))
    if step <= 0:
        return float(DEFAULT_PERIODS_PER_YEAR)
    return MS_PER_YEAR / step


def max_drawdown_pct(equity: np.ndarray) -> float:
    """Largest peak-to-trough decline, in percent of the peak."""
    if len(equity) == 0:
        return 0.0
    peaks = np.maximum.accumulate(equity)
    with np.errstate(divide='ignore', invalid='ignore'):
        dd = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)
    return float(np.max(dd)) * 100.0


def periodic_returns(equity: np.ndarray) -> np.ndarray:
    if len(equity) < 2:
        return np.zeros(0, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        rets = np.diff(equity) / equity[:-1]
    return rets[np.isfinite(rets)]


def sharpe_ratio(returns: np.ndarray, ppy: float) -> float:
    """mean / std × sqrt(periods per year), zero risk-free rate."""
    if len(returns) < 2:
        return 0.0
    std = float(np.std(returns))
    if std < 1e-12:
        return 0.0
    return float(np.mean(returns)) / std * np.sqrt(ppy)


def sortino_ratio(returns: np.ndarray, ppy: float) -> float:
    """Like Sharpe but only downside deviation in the denominator."""
    if len(returns) < 2:
        return 0.0
    downside = returns[returns < 0]
    if len(downside) == 0:
        return 0.0
    dd_std = float(np.sqrt(np.mean(downside ** 2)))
    if dd_std < 1e-12:
        return 0.0
    return float(np.mean(returns)) / dd_std * np.sqrt(ppy)


def profit_factor(wins: list, losses: list) -> float:
    """
    sum(wins) / |sum(losses)|

    No losing trades → +inf (or 0.0 when there are no winners either).
    """
    gross_profit = float(sum(wins))
    gross_loss = abs(float(sum(losses)))
    if gross_loss < 1e-12:
        return float('inf') if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def _round(value: float, digits: int) -> float:
    if not np.isfinite(value):
        return value
    return round(float(value), digits)


def compute_metrics(equity_curve: list, trades: list, initial_capital: float,
                    closes=None) -> dict:
    """
    Args:
        equity_curve: [{'timestamp': ms, 'equity': float}, ...]
        trades: ClosedTrade objects
        initial_capital: starting capital
        closes: optional close prices for buy & hold comparison

    Returns dict of metrics. Trade PnL is net of fees and funding.
    """
    equity = np.array([p['equity'] for p in equity_curve], dtype=np.float64)
    timestamps = [p['timestamp'] for p in equity_curve]
    final_equity = float(equity[-1]) if len(equity) else float(initial_capital)

    total_return_pct = ((final_equity - initial_capital) / initial_capital * 100.0
                        if initial_capital > 0 else 0.0)
    max_dd = max_drawdown_pct(equity)

    ppy = periods_per_year(timestamps)
    returns = periodic_returns(equity)
    sharpe = sharpe_ratio(returns, ppy)
    sortino = sortino_ratio(returns, ppy)
    calmar = total_return_pct / max_dd if max_dd > 1e-9 else 0.0

    pnls = [t.net_pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    total_trades = len(pnls)
    win_rate = len(wins) / total_trades if total_trades else 0.0

    exit_reasons = {}
    for t in trades:
        exit_reasons[t.exit_reason] = exit_reasons.get(t.exit_reason, 0) + 1

    bh_return = 0.0
    if closes is not None and len(closes) > 1 and closes[0] > 0:
        bh_return = (closes[-1] - closes[0]) / closes[0] * 100.0

    return {
        'total_return_pct': _round(total_return_pct, 2),
        'buy_hold_return_pct': _round(bh_return, 2),
        'max_drawdown_pct': _round(max_dd, 2),
        'sharpe_ratio': _round(sharpe, 3),
        'sortino_ratio': _round(sortino, 3),
        'calmar_ratio': _round(calmar, 3),
        'win_rate': _round(win_rate, 4),
        'win_rate_pct': _round(win_rate * 100.0, 1),
        'profit_factor': _round(profit_factor(wins, losses), 3),
        'gross_profit': _round(sum(wins), 2),
        'gross_loss': _round(abs(sum(losses)), 2),
        'avg_win': _round(sum(wins) / len(wins), 2) if wins else 0.0,
        'avg_loss': _round(sum(losses) / len(losses), 2) if losses else 0.0,
        'largest_win': _round(max(wins), 2) if wins else 0.0,
        'largest_loss': _round(min(losses), 2) if losses else 0.0,
        'avg_hold_ms': _round(float(np.mean([t.hold_time for t in trades])), 0) if trades else 0.0,
        'total_trades': total_trades,
        'total_fees': _round(sum(t.fees for t in trades), 4),
        'total_funding': _round(sum(t.funding for t in trades), 4),
        'exit_reasons': exit_reasons,
        'final_capital': _round(final_equity, 2),
        'periods_per_year': _round(ppy, 2),
    }

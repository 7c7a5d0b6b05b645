"""
Grid Engine Backtest CLI.

Usage:
  python3 main.py --coins BTC ETH SOL --start 2024-01-01
  python3 main.py --coins BTC --start 2023-01-01 --end 2024-12-31 --capital 5000
  python3 main.py --coins BTC ETH --executor thread --no-plot
"""
import argparse
import json
import logging
import os
import sys

import numpy as np
import pandas as pd

from config import STRATEGY_PARAMS, BACKTEST_CONFIG
from backtest.simulator import BacktestSimulator, PORTFOLIO_KEY
from core.errors import ConfigError
from engine.schema import StrategyConfig
from live.logger import setup_logging

logger = logging.getLogger('main')


# ─── TRADE LOG ─────────────────────────────────────────────────────

def build_trade_log(trades: list) -> pd.DataFrame:
    """
    One row per closed position with derived columns (return %, hold
    time, running PnL / win rate / profit factor).
    """
    if not trades:
        return pd.DataFrame()

    df = pd.DataFrame([t.to_dict() for t in trades])
    df['entry_time'] = pd.to_datetime(df['opened_at'], unit='ms')
    df['exit_time'] = pd.to_datetime(df['closed_at'], unit='ms')
    df['hold_hours'] = (df['closed_at'] - df['opened_at']) / 3_600_000.0
    sign = np.where(df['side'] == 'long', 1.0, -1.0)
    df['return_pct'] = (df['exit_price'] - df['entry_price']) / df['entry_price'] * 100 * sign

    df['trade_number'] = range(1, len(df) + 1)
    df['cumulative_pnl'] = df['net_pnl'].cumsum()
    df['is_win'] = (df['net_pnl'] > 0).astype(int)
    df['running_win_rate'] = df['is_win'].expanding().mean() * 100
    cum_profit = df['net_pnl'].clip(lower=0).cumsum()
    cum_loss = df['net_pnl'].clip(upper=0).abs().cumsum()
    df['running_profit_factor'] = (cum_profit / cum_loss.replace(0, np.nan)).fillna(0)
    return df


def save_results(coin: str, result, trade_log: pd.DataFrame, save_dir: str):
    """Trade log CSV, equity curve CSV and the full JSON result."""
    os.makedirs(save_dir, exist_ok=True)
    safe_coin = coin.replace('/', '')

    if not trade_log.empty:
        path = os.path.join(save_dir, f'{safe_coin}_trade_log.csv')
        trade_log.to_csv(path, index=False)
        print(f"  Trade log saved to {path}")

    eq = pd.DataFrame(result.equity_curve)
    if not eq.empty:
        eq['datetime'] = pd.to_datetime(eq['timestamp'], unit='ms')
        eq.to_csv(os.path.join(save_dir, f'{safe_coin}_equity.csv'), index=False)

    with open(os.path.join(save_dir, f'{safe_coin}_result.json'), 'w') as f:
        json.dump(result.to_dict(), f, indent=2)
    print(f"  Results saved to {save_dir}/")


# ─── CONSOLE OUTPUT ────────────────────────────────────────────────

def _fmt_ratio(value) -> str:
    if isinstance(value, str) or not np.isfinite(value):
        return 'inf'
    return f"{value:.3f}"


def print_metrics(coin: str, metrics: dict, rejections: dict = None):
    """Print formatted metrics table."""
    print(f"\n{'='*62}")
    print(f"  {coin} -- Performance Summary")
    print(f"{'='*62}")

    print(f"  --- Performance ---")
    perf_rows = [
        ("Total Return",   f"{metrics.get('total_return_pct', 0):+.2f}%"),
        ("Buy & Hold",     f"{metrics.get('buy_hold_return_pct', 0):+.2f}%"),
        ("Max Drawdown",   f"{metrics.get('max_drawdown_pct', 0):.2f}%"),
        ("Final Capital",  f"${metrics.get('final_capital', 0):,.2f}"),
    ]
    for label, value in perf_rows:
        print(f"  {label:<20} {value:>12}")

    print(f"\n  --- Risk-Adjusted Ratios ---")
    ratio_rows = [
        ("Sharpe Ratio",   _fmt_ratio(metrics.get('sharpe_ratio', 0))),
        ("Sortino Ratio",  _fmt_ratio(metrics.get('sortino_ratio', 0))),
        ("Calmar Ratio",   _fmt_ratio(metrics.get('calmar_ratio', 0))),
        ("Win Rate",       f"{metrics.get('win_rate_pct', 0):.1f}%"),
        ("Profit Factor",  _fmt_ratio(metrics.get('profit_factor', 0))),
    ]
    for label, value in ratio_rows:
        print(f"  {label:<20} {value:>12}")

    print(f"\n  --- Trading Activity ---")
    trade_rows = [
        ("Total Trades",   f"{metrics.get('total_trades', 0)}"),
        ("Fills",          f"{metrics.get('fills', 0)}"),
        ("Rebalances",     f"{metrics.get('rebalances', 0)}"),
        ("Gross Profit",   f"${metrics.get('gross_profit', 0):,.2f}"),
        ("Gross Loss",     f"${metrics.get('gross_loss', 0):,.2f}"),
        ("Fees",           f"${metrics.get('total_fees', 0):,.2f}"),
        ("Funding PnL",    f"${metrics.get('total_funding', 0):+,.2f}"),
    ]
    for label, value in trade_rows:
        print(f"  {label:<20} {value:>12}")

    print(f"\n  --- Risk Events ---")
    risk_rows = [
        ("Panic Cycles",   f"{metrics.get('panic_cycles', 0)}"),
        ("Tighten Cycles", f"{metrics.get('tighten_cycles', 0)}"),
        ("Oracle Actions", f"{metrics.get('oracle_actions', 0)}"),
        ("Order Failures", f"{metrics.get('order_failures', 0)}"),
    ]
    for label, value in risk_rows:
        print(f"  {label:<20} {value:>12}")

    exits = metrics.get('exit_reasons', {})
    if exits:
        print(f"\n  --- Exit Reasons ---")
        n = sum(exits.values())
        for reason, count in sorted(exits.items(), key=lambda kv: -kv[1]):
            print(f"    {reason:<23} {count:>5} ({count / n * 100:>5.1f}%)")

    if rejections:
        print(f"\n  --- Risk Rejections ---")
        for reason, count in sorted(rejections.items()):
            print(f"    {reason:<28} {count:>5}")

    print(f"{'='*62}")


def print_portfolio(metrics: dict):
    print(f"\n{'='*62}")
    print(f"  PORTFOLIO ({metrics.get('coins', 0)} coins, equal weight)")
    print(f"{'='*62}")
    for key in ('total_return_pct', 'max_drawdown_pct', 'sharpe_ratio',
                'win_rate_pct', 'profit_factor', 'total_trades', 'final_capital'):
        value = metrics.get(key, 0)
        text = _fmt_ratio(value) if isinstance(value, float) else f"{value}"
        print(f"  {key:<24} {text:>12}")
    print(f"{'='*62}")


# ─── CHARTS ────────────────────────────────────────────────────────

def plot_results(coin: str, result, df: pd.DataFrame, save_dir: str):
    """Equity vs buy & hold, and drawdown."""
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    os.makedirs(save_dir, exist_ok=True)
    safe_coin = coin.replace('/', '')

    eq = pd.DataFrame(result.equity_curve)
    if eq.empty:
        return
    dates = pd.to_datetime(eq['timestamp'], unit='ms')
    equity = eq['equity'].values
    closes = df['close'].values[:len(equity)].astype(np.float64)
    capital = equity[0] if len(equity) else 1.0
    buy_hold = capital * closes / closes[0]
    peak = np.maximum.accumulate(equity)
    drawdown = (equity - peak) / peak * 100

    fig, (ax_eq, ax_dd) = plt.subplots(2, 1, figsize=(14, 8), sharex=True,
                                       gridspec_kw={'height_ratios': [3, 1]})
    ax_eq.plot(dates, equity, color='#00d4aa', linewidth=1.2, label='Grid')
    ax_eq.plot(dates, buy_hold, color='#ff6b6b', linewidth=0.8, alpha=0.7, label='Buy & Hold')
    ax_eq.set_title(f"{coin} | Return {result.metrics.get('total_return_pct', 0):+.2f}% | "
                    f"MDD {result.metrics.get('max_drawdown_pct', 0):.2f}%")
    ax_eq.set_ylabel('Equity ($)')
    ax_eq.grid(True, alpha=0.3)
    ax_eq.legend(loc='upper left')

    ax_dd.fill_between(dates, drawdown, 0, color='#ff4444', alpha=0.4)
    ax_dd.set_ylabel('Drawdown %')
    ax_dd.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(os.path.join(save_dir, f'{safe_coin}_equity.png'), dpi=150, bbox_inches='tight')
    plt.close(fig)
    print(f"  Chart saved to {save_dir}/")


def main():
    parser = argparse.ArgumentParser(description="Grid Engine Backtest Runner")
    parser.add_argument("--coins", nargs="+", default=None,
                        help="Coins to test (e.g. BTC ETH SOL)")
    parser.add_argument("--start", default=None, help="Start date YYYY-MM-DD")
    parser.add_argument("--end", default=None, help="End date YYYY-MM-DD")
    parser.add_argument("--capital", type=float, default=None, help="Capital per coin")
    parser.add_argument("--leverage", type=float, default=None)
    parser.add_argument("--spacing", type=float, default=None, help="Grid spacing %%")
    parser.add_argument("--executor", choices=['process', 'thread', 'serial'], default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--output", default=BACKTEST_CONFIG.get('output_dir', 'data/backtests'))
    parser.add_argument("--no-plot", action="store_true", help="Skip chart generation")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    setup_logging(log_level=args.log_level)

    config = STRATEGY_PARAMS.copy()
    if args.capital:
        config['total_capital'] = args.capital
    if args.leverage:
        config['leverage'] = args.leverage
    if args.spacing:
        config['spacing_pct'] = args.spacing
    try:
        StrategyConfig.from_params(config)
    except ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}")
        sys.exit(1)

    coins = args.coins or [c.replace('/USDT', '') for c in BACKTEST_CONFIG['coins']]
    start = args.start or BACKTEST_CONFIG['start_date']
    end = args.end or BACKTEST_CONFIG.get('end_date')

    print(f"\n{'='*62}")
    print(f"  Grid Engine | Real/Virtual Levels | {BACKTEST_CONFIG['timeframe']} Candles")
    print(f"  Capital: ${config['total_capital']:,.0f} | Leverage: {config['leverage']}x | "
          f"Levels: {config['level_count']} @ {config['spacing_pct']}%")
    print(f"  Coins: {coins} | Period: {start} -> {end or 'now'}")
    print(f"{'='*62}")

    sim = BacktestSimulator(config)
    data = {}
    for raw_coin in coins:
        coin = raw_coin if '/' in raw_coin else f"{raw_coin.upper()}/USDT"
        df = sim._load(coin, start, end)
        if df is None or len(df) == 0:
            print(f"  No data for {coin}, skipping")
            continue
        print(f"  {coin}: {len(df)} candles "
              f"({pd.to_datetime(df['timestamp'].iloc[0], unit='ms'):%Y-%m-%d} -> "
              f"{pd.to_datetime(df['timestamp'].iloc[-1], unit='ms'):%Y-%m-%d})")
        data[coin] = df

    results = sim.run_multi(list(data), data=data, executor=args.executor,
                            max_workers=args.workers)

    for coin, result in results.items():
        if coin == PORTFOLIO_KEY:
            continue
        print_metrics(coin, result.metrics, result.rejections)
        save_results(coin, result, build_trade_log(result.trades), args.output)
        if not args.no_plot:
            plot_results(coin, result, data[coin], os.path.join(args.output, 'charts'))

    if len(results) > 2:
        print_portfolio(results[PORTFOLIO_KEY]['metrics'])


if __name__ == "__main__":
    main()

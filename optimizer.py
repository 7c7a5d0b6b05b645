"""
Grid Engine Optimizer — Walk-Forward with Anchored OOS.

  1. Anchored walk-forward: non-overlapping test windows, expanding train
  2. TPE optimizes the TRAIN score only; test scores are stored as
     trial attributes and never steer the search
  3. Pessimistic aggregation: min() across coin × window
  4. OOS gate on the best parameters

Usage:
  python3 optimizer.py --coins BTC ETH SOL --trials 200 --windows 4
"""
import argparse
import json
import logging
import math
import os
import time

import numpy as np
import optuna

from config import STRATEGY_PARAMS, BACKTEST_CONFIG, OPTIMIZER_SPACE
from backtest.data_fetcher import load_candles
from core.errors import GridError
from engine.strategy import GridStrategy
from engine.types import json_safe

logger = logging.getLogger('optimizer')

FAIL_SCORE = -10.0
MIN_TRADES = 20


def load_data(coins, start, end, timeframe='15m') -> dict:
    data = {}
    for coin in coins:
        symbol = coin if '/' in coin else f"{coin.upper()}/USDT"
        df = load_candles(symbol, start, end, timeframe)
        if df is not None and len(df) > 100:
            data[symbol] = df
    return data


# ─── Walk-Forward Splitting (Anchored, Non-Overlapping) ──────

def split_anchored_walk_forward(df, n_windows=4, train_ratio=0.7,
                                min_train=200, min_test=50) -> list:
    """
    Window w trains on [0, w*ws + train_ratio*ws) and tests on the rest
    of chunk w. Train always starts at bar 0; test windows never overlap
    and never appear in any train set. The last window runs to the end.

    Returns list of (train_df, test_df).
    """
    n = len(df)
    window_size = n // n_windows
    splits = []
    for w in range(n_windows):
        train_end = min(w * window_size + int(window_size * train_ratio), n)
        test_end = n if w == n_windows - 1 else min((w + 1) * window_size, n)
        train_df = df.iloc[0:train_end].reset_index(drop=True)
        test_df = df.iloc[train_end:test_end].reset_index(drop=True)
        if len(train_df) >= min_train and len(test_df) >= min_test:
            splits.append((train_df, test_df))
    return splits


# ─── Strategy Runner ─────────────────────────────────────────

def run_strategy(df, params: dict, symbol: str = None):
    """Metrics dict, or None when the parameters are rejected / the run fails."""
    config = dict(STRATEGY_PARAMS)
    config.update(params)
    if symbol:
        config['symbol'] = symbol
    try:
        strat = GridStrategy(config)
    except GridError as e:
        logger.debug(f"Params rejected: {e}")
        return None
    try:
        return strat.run(df).metrics
    except GridError as e:
        logger.debug(f"Run failed: {e}")
        return None
    finally:
        strat.close()


# ─── Fitness ─────────────────────────────────────────────────

def composite_fitness(metrics: dict, initial_capital: float = None) -> float:
    """
    Calmar × sqrt(ProfitFactor), with gates on trade count, drawdown,
    blow-up and profit factor. Profit factor is capped at 10 (a run
    with no losing trade reports inf).
    """
    if metrics is None:
        return FAIL_SCORE
    initial_capital = initial_capital or STRATEGY_PARAMS['total_capital']
    trades = metrics.get('total_trades', 0)
    ret = metrics.get('total_return_pct', 0.0)
    dd = max(metrics.get('max_drawdown_pct', 0.0), 0.01)
    pf = metrics.get('profit_factor', 0.0)
    pf = 10.0 if not math.isfinite(pf) else min(pf, 10.0)

    if trades < MIN_TRADES:
        return FAIL_SCORE
    if dd > 50.0:
        return FAIL_SCORE
    if metrics.get('final_capital', 0.0) < initial_capital * 0.5:
        return FAIL_SCORE
    if pf < 0.5:
        return FAIL_SCORE

    penalty = 0.01 * (trades - 300) if trades > 300 else 0.0
    return ret / dd * np.sqrt(max(pf, 0.1)) - penalty


# ─── Objective ───────────────────────────────────────────────

def sample_params(trial) -> dict:
    params = {}
    for name, space in OPTIMIZER_SPACE.items():
        if space['type'] == 'int':
            params[name] = trial.suggest_int(name, space['low'], space['high'])
        elif space['type'] == 'float':
            params[name] = trial.suggest_float(name, space['low'], space['high'])
        elif space['type'] == 'cat':
            params[name] = trial.suggest_categorical(name, space['choices'])
    # Keep the real-level bounds consistent
    if params.get('max_real_positions', 4) < STRATEGY_PARAMS['min_real_positions']:
        params['max_real_positions'] = STRATEGY_PARAMS['min_real_positions']
    return params


def make_objective(data: dict, n_windows: int):
    """Objective maximizing the worst TRAIN score across coin × window."""

    def objective(trial):
        params = sample_params(trial)
        train_scores, test_scores = [], []

        for coin, df in data.items():
            for w_idx, (train_df, test_df) in enumerate(
                    split_anchored_walk_forward(df, n_windows)):
                train_score = composite_fitness(run_strategy(train_df, params, coin))
                if train_score <= FAIL_SCORE:
                    return FAIL_SCORE
                train_scores.append(train_score)

                test_metrics = run_strategy(test_df, params, coin)
                test_score = composite_fitness(test_metrics)
                test_scores.append(test_score)
                if test_metrics is not None:
                    trial.set_user_attr(f'oos_{coin}_{w_idx}', json_safe({
                        'test_score': round(test_score, 4),
                        'test_return': test_metrics.get('total_return_pct', 0),
                        'test_dd': test_metrics.get('max_drawdown_pct', 0),
                        'test_pf': test_metrics.get('profit_factor', 0),
                        'test_trades': test_metrics.get('total_trades', 0),
                    }))

        if not train_scores:
            return FAIL_SCORE
        trial.set_user_attr('train_scores', [round(s, 4) for s in train_scores])
        trial.set_user_attr('test_scores', [round(s, 4) for s in test_scores])
        return min(train_scores)

    return objective


# ─── OOS Validation ──────────────────────────────────────────

def validate_oos(data: dict, params: dict, n_windows: int, verbose: bool = True):
    """
    Run `params` on every held-out window.
    Pass = mean score > 0 and at least half the windows positive.
    """
    scores, returns = [], []
    results = {}
    for coin, df in data.items():
        coin_scores = []
        for w_idx, (_, test_df) in enumerate(split_anchored_walk_forward(df, n_windows)):
            metrics = run_strategy(test_df, params, coin)
            score = composite_fitness(metrics)
            coin_scores.append(score)
            scores.append(score)
            if metrics is not None:
                returns.append(metrics.get('total_return_pct', 0.0))
                if verbose:
                    print(f"  {coin} W{w_idx}: {'PASS' if score > 0 else 'FAIL'} "
                          f"Return={metrics.get('total_return_pct', 0):+.2f}% "
                          f"DD={metrics.get('max_drawdown_pct', 0):.2f}% "
                          f"Trades={metrics.get('total_trades', 0)} Score={score:.3f}")
        results[coin] = coin_scores

    if not scores:
        return False, results
    positive = sum(1 for s in scores if s > 0)
    oos_pass = float(np.mean(scores)) > 0 and positive >= len(scores) * 0.5
    if verbose:
        print(f"\n  OOS: mean {np.mean(scores):.3f} | positive {positive}/{len(scores)} | "
              f"avg return {np.mean(returns) if returns else 0:+.2f}% → "
              f"{'PASSED' if oos_pass else 'FAILED'}")
    return oos_pass, results


# ─── Main ────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Grid Engine Optimizer (Walk-Forward)")
    parser.add_argument("--coins", nargs="+", default=BACKTEST_CONFIG['coins'])
    parser.add_argument("--trials", type=int, default=100)
    parser.add_argument("--start", default=BACKTEST_CONFIG['start_date'])
    parser.add_argument("--end", default=BACKTEST_CONFIG.get('end_date'))
    parser.add_argument("--windows", type=int, default=4)
    parser.add_argument("--study-name", default="grid_engine_wfo")
    parser.add_argument("--storage", default=None,
                        help="optuna storage URL, e.g. sqlite:///grid_wfo.db")
    parser.add_argument("--output", default="data/optimizer_results.json")
    args = parser.parse_args()

    print(f"Loading data for {args.coins}...")
    data = load_data(args.coins, args.start, args.end, BACKTEST_CONFIG['timeframe'])
    if not data:
        print("No data loaded, exiting")
        return
    for coin, df in data.items():
        print(f"  {coin}: {len(df):,} bars")

    optuna.logging.set_verbosity(optuna.logging.WARNING)
    study = optuna.create_study(
        direction="maximize",
        storage=args.storage,
        study_name=args.study_name,
        load_if_exists=args.storage is not None,
        sampler=optuna.samplers.TPESampler(seed=42, n_startup_trials=20),
    )

    print(f"\n{'='*60}\n  Optimizing: {args.trials} trials\n{'='*60}\n")
    start_time = time.time()
    study.optimize(make_objective(data, args.windows), n_trials=args.trials, n_jobs=1,
                   show_progress_bar=True)
    elapsed = time.time() - start_time

    print(f"\n{'='*60}")
    print(f"  Best Trial (Train MIN Score: {study.best_value:.4f}) in {elapsed/60:.1f} min")
    print(f"{'='*60}")
    for k, v in sorted(study.best_params.items()):
        default = STRATEGY_PARAMS.get(k, '—')
        if isinstance(v, float):
            print(f"  {k:<28} {v:>8.4f}  (default: {default})")
        else:
            print(f"  {k:<28} {v!s:>8}  (default: {default})")

    print(f"\n{'='*60}\n  Out-of-Sample Validation\n{'='*60}")
    oos_pass, oos_results = validate_oos(data, study.best_params, args.windows)

    os.makedirs(os.path.dirname(args.output) or '.', exist_ok=True)
    with open(args.output, 'w') as f:
        json.dump(json_safe({
            'best_params': study.best_params,
            'train_min_score': study.best_value,
            'train_scores': study.best_trial.user_attrs.get('train_scores', []),
            'test_scores': study.best_trial.user_attrs.get('test_scores', []),
            'oos_pass': oos_pass,
            'oos_scores': oos_results,
            'n_trials': args.trials,
            'n_windows': args.windows,
            'coins': list(data.keys()),
        }), f, indent=4)
    print(f"  Saved results to {args.output}")


if __name__ == "__main__":
    main()

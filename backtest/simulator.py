"""
Backtest Simulator.

Thin orchestration layer that:
  1. Loads candles via data_fetcher
  2. Instantiates GridStrategy per symbol
  3. Runs the replay (serially or one worker per symbol)
  4. Aggregates an equal-weight portfolio view

The actual backtest kernel lives in engine/strategy.py.
"""
import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed

import numpy as np
import pandas as pd

from config import STRATEGY_PARAMS, BACKTEST_CONFIG
from backtest.data_fetcher import load_candles
from engine.strategy import GridStrategy

logger = logging.getLogger('backtest')

PORTFOLIO_KEY = '_portfolio'
AVERAGED_METRICS = ('total_return_pct', 'max_drawdown_pct', 'sharpe_ratio',
                    'sortino_ratio', 'calmar_ratio', 'win_rate_pct', 'profit_factor')
SUMMED_METRICS = ('total_trades', 'total_fees', 'total_funding', 'final_capital')


def normalize_symbol(coin: str) -> str:
    return coin if '/' in coin else f"{coin.upper()}/USDT"


# ─── Standalone worker (picklable for ProcessPoolExecutor) ─────

def _run_symbol_worker(params: dict, symbol: str, candles_data: dict, abort_event=None):
    """Run one symbol's replay. Returns a BacktestResult."""
    candles = pd.DataFrame(candles_data)
    strat = GridStrategy(dict(params, symbol=symbol))
    try:
        return strat.run(candles, abort_event=abort_event)
    finally:
        strat.close()


class BacktestSimulator:
    """Run a full backtest for one or more coins."""

    def __init__(self, config: dict = None, backtest_config: dict = None, loader=None):
        """
        Args:
            config: flat strategy params (defaults to STRATEGY_PARAMS)
            backtest_config: dates / timeframe / executor settings
            loader: callable(symbol, start, end, timeframe) -> DataFrame,
                    defaults to the cached ccxt loader
        """
        self.config = dict(config or STRATEGY_PARAMS)
        self.bt_config = dict(backtest_config or BACKTEST_CONFIG)
        self.loader = loader or load_candles
        self.results = {}

    def _load(self, symbol: str, start: str, end: str) -> pd.DataFrame:
        start = start or self.bt_config['start_date']
        end = end or self.bt_config.get('end_date')
        tf = self.bt_config.get('timeframe', '15m')
        return self.loader(symbol, start, end, tf)

    def run_single(self, coin: str, start: str = None, end: str = None,
                   df: pd.DataFrame = None, abort_event=None):
        """
        Run backtest for a single coin. `df` skips the loader.

        Returns a BacktestResult, or None when no candles are available.
        """
        symbol = normalize_symbol(coin)
        if df is None:
            df = self._load(symbol, start, end)
        if df is None or len(df) == 0:
            logger.warning(f"No candles for {symbol}")
            return None

        result = _run_symbol_worker(self.config, symbol, df, abort_event)
        self.results[symbol] = result
        return result

    def run_multi(self, coins: list = None, start: str = None, end: str = None,
                  data: dict = None, executor: str = None, max_workers: int = None,
                  abort_event=None) -> dict:
        """
        Run every coin independently; one failing coin does not stop the rest.

        Args:
            data: optional {symbol: DataFrame}, skips the loader
            executor: 'process' (default), 'thread' or 'serial'
            abort_event: threading.Event; with processes it only stops
                         symbols that have not started yet

        Returns {symbol: BacktestResult, '_portfolio': {'metrics': {...}}}.
        """
        coins = [normalize_symbol(c) for c in (coins or self.bt_config['coins'])]
        executor = executor or self.bt_config.get('executor', 'process')
        max_workers = max_workers or self.bt_config.get('max_workers')

        candles = {}
        for symbol in coins:
            df = data.get(symbol) if data else None
            if df is None:
                df = self._load(symbol, start, end)
            if df is None or len(df) == 0:
                logger.warning(f"No candles for {symbol}, skipped")
                continue
            candles[symbol] = df

        all_results = {}
        if executor == 'serial':
            for symbol, df in candles.items():
                if abort_event is not None and abort_event.is_set():
                    break
                logger.info(f"Running {symbol}...")
                try:
                    all_results[symbol] = _run_symbol_worker(self.config, symbol, df, abort_event)
                except Exception as e:
                    logger.error(f"{symbol} failed: {e}")
        else:
            all_results = self._run_pool(candles, executor, max_workers, abort_event)

        # Stable order regardless of completion order
        all_results = {s: all_results[s] for s in coins if s in all_results}
        self.results.update(all_results)
        if all_results:
            all_results[PORTFOLIO_KEY] = self._compute_portfolio(all_results)
        return all_results

    def _run_pool(self, candles: dict, executor: str, max_workers, abort_event) -> dict:
        if executor == 'thread':
            pool_cls, share_event = ThreadPoolExecutor, True
            payload = dict(candles)
        elif executor == 'process':
            pool_cls, share_event = ProcessPoolExecutor, False
            payload = {s: df.to_dict(orient='list') for s, df in candles.items()}
        else:
            raise ValueError(f"Unknown executor '{executor}'")

        results = {}
        with pool_cls(max_workers=max_workers) as pool:
            future_to_symbol = {
                pool.submit(_run_symbol_worker, self.config, symbol, data,
                            abort_event if share_event else None): symbol
                for symbol, data in payload.items()
            }
            for future in as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                if abort_event is not None and abort_event.is_set():
                    for f in future_to_symbol:
                        f.cancel()
                try:
                    results[symbol] = future.result()
                    logger.info(f"{symbol} done: "
                                f"{results[symbol].metrics.get('total_return_pct', 0):+.2f}%")
                except Exception as e:
                    logger.error(f"{symbol} failed: {e}")
        return results

    def _compute_portfolio(self, results: dict) -> dict:
        """Equal-weight mean of per-coin ratios, sums of counts and capital."""
        metrics_list = [r.metrics for s, r in results.items() if s != PORTFOLIO_KEY]
        if not metrics_list:
            return {'metrics': {}}

        portfolio = {}
        for key in AVERAGED_METRICS:
            values = [float(m.get(key, 0.0)) for m in metrics_list]
            portfolio[key] = round(float(np.mean(values)), 4)
        for key in SUMMED_METRICS:
            portfolio[key] = round(sum(m.get(key, 0) for m in metrics_list), 4)
        portfolio['coins'] = len(metrics_list)
        return {'metrics': portfolio}

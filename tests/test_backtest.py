"""
Tests for the backtest layer: candle loading / caching, funding merge and
the multi-symbol simulator.
"""
import sys
import os
import shutil
import tempfile
import threading
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import ccxt
import numpy as np
import pandas as pd
import pytest

from backtest.data_fetcher import merge_funding, load_candles, _paginate
from backtest.simulator import BacktestSimulator, PORTFOLIO_KEY, normalize_symbol

BAR_MS = 900_000
HOUR_MS = 3_600_000
T0 = 1_704_067_200_000   # 2024-01-01 00:00 UTC


def make_df(n=600, seed=11, base=100.0):
    rng = np.random.default_rng(seed)
    i = np.arange(n)
    close = base * (1 + 0.04 * np.sin(2 * np.pi * i / 100)) + rng.normal(0, 0.2, n)
    open_ = np.concatenate([[close[0]], close[:-1]])
    return pd.DataFrame({
        'timestamp': (T0 + i * BAR_MS).astype(np.float64),
        'open': open_,
        'high': np.maximum(open_, close) * 1.003,
        'low': np.minimum(open_, close) * 0.997,
        'close': close,
        'volume': rng.uniform(90, 110, n),
    })


class FakeExchange:
    """Just enough of a ccxt exchange for the loader."""

    id = 'fake'

    def __init__(self, start_ts, end_ts):
        self.has = {'fetchFundingRateHistory': True}
        self.candles = [[ts, 100.0, 101.0, 99.0, 100.5, 10.0]
                        for ts in range(start_ts, end_ts + 1, BAR_MS)]
        self.funding = [{'timestamp': ts, 'fundingRate': 0.0001 * (k + 1)}
                        for k, ts in enumerate(range(start_ts, end_ts + 1, 8 * HOUR_MS))]
        self.ohlcv_calls = 0

    def fetch_ohlcv(self, symbol, timeframe, since=None, limit=1000):
        self.ohlcv_calls += 1
        return [c for c in self.candles if c[0] >= since][:limit]

    def fetch_funding_rate_history(self, symbol, since=None, limit=1000):
        return [f for f in self.funding if f['timestamp'] >= since][:limit]


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


# ─── Data loading ────────────────────────────────────────────────

class TestFundingMerge:
    def test_rate_in_force_at_each_candle(self):
        candles = pd.DataFrame({'timestamp': [0, 4 * HOUR_MS, 8 * HOUR_MS, 9 * HOUR_MS],
                                'close': [1.0, 1.0, 1.0, 1.0]})
        funding = pd.DataFrame({'timestamp': [0, 8 * HOUR_MS], 'fundingRate': [0.0001, 0.0003]})
        out = merge_funding(candles, funding)
        assert list(out['fundingRate']) == [0.0001, 0.0001, 0.0003, 0.0003]

    def test_candles_before_first_settlement_are_nan(self):
        candles = pd.DataFrame({'timestamp': [0, HOUR_MS], 'close': [1.0, 1.0]})
        funding = pd.DataFrame({'timestamp': [HOUR_MS], 'fundingRate': [0.0002]})
        out = merge_funding(candles, funding)
        assert np.isnan(out['fundingRate'].iloc[0])
        assert out['fundingRate'].iloc[1] == 0.0002

    def test_no_funding_history(self):
        candles = pd.DataFrame({'timestamp': [0, HOUR_MS], 'close': [1.0, 1.0]})
        out = merge_funding(candles, pd.DataFrame(columns=['timestamp', 'fundingRate']))
        assert out['fundingRate'].isna().all()


class TestLoadCandles:
    def test_fetch_then_cache(self, tmp_dir):
        start = T0
        end = T0 + 24 * HOUR_MS
        exchange = FakeExchange(start, end)

        df = load_candles('BTC/USDT', '2024-01-01', '2024-01-02', '15m',
                          cache_dir=tmp_dir, exchange=exchange)
        assert len(df) == 97
        assert df['timestamp'].is_monotonic_increasing
        assert 'fundingRate' in df.columns
        calls = exchange.ohlcv_calls

        again = load_candles('BTC/USDT', '2024-01-01', '2024-01-02', '15m',
                             cache_dir=tmp_dir, exchange=exchange)
        assert exchange.ohlcv_calls == calls
        pd.testing.assert_frame_equal(df, again)

    def test_cache_extended_forward(self, tmp_dir):
        exchange = FakeExchange(T0, T0 + 48 * HOUR_MS)
        load_candles('BTC/USDT', '2024-01-01', '2024-01-02', '15m',
                     cache_dir=tmp_dir, exchange=exchange)
        df = load_candles('BTC/USDT', '2024-01-01', '2024-01-03', '15m',
                          cache_dir=tmp_dir, exchange=exchange)
        assert len(df) == 193
        assert df['timestamp'].is_unique

    def test_paginate_retries_network_errors(self, monkeypatch):
        monkeypatch.setattr('backtest.data_fetcher.time.sleep', lambda s: None)
        attempts = {'n': 0}

        def fetch(since):
            attempts['n'] += 1
            if attempts['n'] == 1:
                raise ccxt.NetworkError('timeout')
            return [[since], [since + 1]] if since < 10 else []

        rows = _paginate(fetch, 0, 100, lambda r: r[0], 'test')
        assert rows[:2] == [[0], [1]]
        assert attempts['n'] >= 3

    def test_paginate_gives_up(self, monkeypatch):
        monkeypatch.setattr('backtest.data_fetcher.time.sleep', lambda s: None)

        def fetch(since):
            raise ccxt.NetworkError('down')

        with pytest.raises(ccxt.NetworkError):
            _paginate(fetch, 0, 100, lambda r: r[0], 'test')


# ─── Simulator ───────────────────────────────────────────────────

class TestSimulator:
    def test_normalize_symbol(self):
        assert normalize_symbol('btc') == 'BTC/USDT'
        assert normalize_symbol('ETH/USDT:USDT') == 'ETH/USDT:USDT'

    def test_run_single_with_frame(self):
        sim = BacktestSimulator()
        result = sim.run_single('BTC', df=make_df())
        assert result.symbol == 'BTC/USDT'
        assert result.bars_processed == 600
        assert sim.results['BTC/USDT'] is result

    def test_run_multi_serial_portfolio(self):
        data = {'BTC/USDT': make_df(seed=1), 'ETH/USDT': make_df(seed=2, base=50.0)}
        results = BacktestSimulator().run_multi(['BTC', 'ETH'], data=data, executor='serial')
        assert list(results) == ['BTC/USDT', 'ETH/USDT', PORTFOLIO_KEY]
        portfolio = results[PORTFOLIO_KEY]['metrics']
        assert portfolio['coins'] == 2
        assert portfolio['total_trades'] == (results['BTC/USDT'].metrics['total_trades']
                                             + results['ETH/USDT'].metrics['total_trades'])

    def test_thread_matches_serial(self):
        data = {'BTC/USDT': make_df(seed=1), 'SOL/USDT': make_df(seed=4, base=20.0)}
        serial = BacktestSimulator().run_multi(['BTC', 'SOL'], data=data, executor='serial')
        threaded = BacktestSimulator().run_multi(['BTC', 'SOL'], data=data, executor='thread',
                                                 max_workers=2)
        for symbol in ('BTC/USDT', 'SOL/USDT'):
            assert serial[symbol].equity_curve == threaded[symbol].equity_curve

    def test_loader_used_and_empty_skipped(self):
        def loader(symbol, start, end, timeframe):
            return make_df() if symbol == 'BTC/USDT' else pd.DataFrame()

        results = BacktestSimulator(loader=loader).run_multi(['BTC', 'XRP'], executor='serial')
        assert 'BTC/USDT' in results
        assert 'XRP/USDT' not in results

    @pytest.mark.parametrize('executor', ['serial', 'thread'])
    def test_one_failing_symbol_does_not_stop_the_rest(self, executor):
        data = {'BTC/USDT': make_df(seed=1), 'ETH/USDT': make_df(seed=2).drop(columns=['high'])}
        results = BacktestSimulator().run_multi(['BTC', 'ETH'], data=data, executor=executor,
                                                max_workers=2)
        assert 'BTC/USDT' in results
        assert 'ETH/USDT' not in results
        assert results[PORTFOLIO_KEY]['metrics']['coins'] == 1

    def test_unknown_executor(self):
        with pytest.raises(ValueError):
            BacktestSimulator().run_multi(['BTC'], data={'BTC/USDT': make_df()}, executor='gpu')

    def test_abort_before_start(self):
        stop = threading.Event()
        stop.set()
        results = BacktestSimulator().run_multi(['BTC'], data={'BTC/USDT': make_df()},
                                                executor='serial', abort_event=stop)
        assert results == {}


if __name__ == "__main__":
    pytest.main([__file__, '-v'])

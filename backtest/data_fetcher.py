"""
Historical candle loader.

ccxt OHLCV + funding-rate history, merged onto one timeline and cached
per symbol/timeframe as Parquet. Later calls only download the part of
the requested range the cache does not cover.
"""
import logging
import os
import time

import ccxt
import pandas as pd

logger = logging.getLogger('data')

CANDLE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']
DEFAULT_CACHE_DIR = os.path.join('data', 'cache')
MAX_FETCH_ERRORS = 5


def _paginate(fetch, start_ts: int, end_ts: int, ts_of, label: str) -> list:
    """Walk `fetch(since)` forward until end_ts. Network errors retry with backoff."""
    rows = []
    since = start_ts
    errors = 0
    while since < end_ts:
        try:
            batch = fetch(since)
        except (ccxt.NetworkError, ccxt.ExchangeError) as e:
            errors += 1
            if errors > MAX_FETCH_ERRORS:
                logger.error(f"{label}: giving up after {errors} errors ({e})")
                raise
            logger.warning(f"{label}: fetch failed ({e}), retry {errors}/{MAX_FETCH_ERRORS}")
            time.sleep(2 * errors)
            continue
        if not batch:
            break
        rows.extend(batch)
        last_ts = ts_of(batch[-1])
        if last_ts < since:
            break
        since = last_ts + 1
    return rows


def fetch_funding_history(exchange, symbol: str, start_ts: int, end_ts: int,
                          limit: int = 1000) -> pd.DataFrame:
    """[timestamp, fundingRate] rows, empty when the exchange has no history endpoint."""
    if not exchange.has.get('fetchFundingRateHistory'):
        logger.warning(f"{exchange.id} has no funding history; default rate will be used")
        return pd.DataFrame(columns=['timestamp', 'fundingRate'])

    rows = _paginate(
        lambda since: exchange.fetch_funding_rate_history(symbol, since, limit),
        start_ts, end_ts, lambda r: r['timestamp'], f"{symbol} funding")
    if not rows:
        return pd.DataFrame(columns=['timestamp', 'fundingRate'])

    df = pd.DataFrame(rows)[['timestamp', 'fundingRate']]
    df['timestamp'] = pd.to_numeric(df['timestamp'])
    df['fundingRate'] = pd.to_numeric(df['fundingRate'])
    return df.sort_values('timestamp').drop_duplicates('timestamp')


def fetch_candles(exchange, symbol: str, timeframe: str, start_ts: int, end_ts: int,
                  limit: int = 1000) -> pd.DataFrame:
    """OHLCV for [start_ts, end_ts] with the funding rate in force at each candle."""
    logger.info(f"Fetching {symbol} {timeframe} {start_ts} → {end_ts}")
    rows = _paginate(
        lambda since: exchange.fetch_ohlcv(symbol, timeframe, since, limit),
        start_ts, end_ts, lambda r: r[0], f"{symbol} ohlcv")
    if not rows:
        return pd.DataFrame(columns=CANDLE_COLUMNS + ['fundingRate'])

    df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
    df = df[df['timestamp'] <= end_ts].sort_values('timestamp').drop_duplicates('timestamp')
    return merge_funding(df, fetch_funding_history(exchange, symbol, start_ts, end_ts, limit))


def merge_funding(candles: pd.DataFrame, funding: pd.DataFrame) -> pd.DataFrame:
    """
    Forward-fill each settlement's rate onto the candle timeline.
    Candles before the first known settlement get NaN (→ default rate).
    """
    candles = candles.sort_values('timestamp').reset_index(drop=True)
    if funding is None or funding.empty:
        out = candles.copy()
        out['fundingRate'] = float('nan')
        return out
    if 'fundingRate' in candles.columns:
        candles = candles.drop(columns=['fundingRate'])
    return pd.merge_asof(candles, funding.sort_values('timestamp'),
                         on='timestamp', direction='backward')


def _cache_path(cache_dir: str, symbol: str, timeframe: str) -> str:
    safe_symbol = symbol.replace('/', '').replace(':', '_')
    return os.path.join(cache_dir, f"{safe_symbol}_{timeframe}.parquet")


def load_candles(symbol: str = 'BTC/USDT', start_date: str = '2024-01-01',
                 end_date: str = None, timeframe: str = '15m',
                 exchange_id: str = 'binance', cache_dir: str = DEFAULT_CACHE_DIR,
                 exchange=None, limit: int = 1000) -> pd.DataFrame:
    """
    Candles for [start_date, end_date] (end None = now), served from the
    Parquet cache and topped up from the exchange when the cache is short.
    """
    os.makedirs(cache_dir, exist_ok=True)
    start_ts = int(pd.Timestamp(start_date).timestamp() * 1000)
    end_ts = (int(pd.Timestamp(end_date).timestamp() * 1000) if end_date
              else int(time.time() * 1000))
    path = _cache_path(cache_dir, symbol, timeframe)

    cached = pd.DataFrame()
    if os.path.exists(path):
        cached = pd.read_parquet(path).sort_values('timestamp').drop_duplicates('timestamp')

    if exchange is None:
        exchange = getattr(ccxt, exchange_id)({'enableRateLimit': True})

    if cached.empty:
        df = fetch_candles(exchange, symbol, timeframe, start_ts, end_ts, limit)
        if not df.empty:
            df.to_parquet(path)
            logger.info(f"Cached {len(df)} candles → {path}")
    else:
        parts = [cached]
        cache_start = int(cached['timestamp'].iloc[0])
        cache_end = int(cached['timestamp'].iloc[-1])
        if start_ts < cache_start:
            parts.insert(0, fetch_candles(exchange, symbol, timeframe,
                                          start_ts, cache_start - 1, limit))
        if end_ts > cache_end:
            parts.append(fetch_candles(exchange, symbol, timeframe,
                                       cache_end + 1, end_ts, limit))
        parts = [p for p in parts if not p.empty]
        if len(parts) > 1:
            df = pd.concat(parts, ignore_index=True)
            df = df.sort_values('timestamp').drop_duplicates('timestamp')
            df.to_parquet(path)
            logger.info(f"Extended cache {path} to {len(df)} candles")
        else:
            df = cached
            logger.info(f"{symbol} {timeframe} served from cache")

    if df.empty:
        return df
    return df[(df['timestamp'] >= start_ts) & (df['timestamp'] <= end_ts)].reset_index(drop=True)

"""
LiveRunner — Main live execution orchestrator.

Runs the same per-candle pass as the backtest (engine/strategy.py) on
freshly closed candles, one GridStrategy per symbol.

Key differences from backtest:
  - Candles come from the exchange, indicators run on a rolling buffer
  - Orders go through BinanceExecutor (ExchangeExecution port)
  - Funding uses the exchange's current rate
  - Ledger state persisted to disk after every pass

Each symbol has its own lock: a pass that is still running when the next
interval fires is skipped, never run twice concurrently.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pandas as pd

from core.errors import GridError, InsufficientData, RiskRejected
from core.signals import prepare_signals, build_signal_snapshot
from engine.events import EventBus
from engine.strategy import GridStrategy
from engine.types import EXIT_MANUAL
from live.executor import BinanceExecutor, ExchangeExecution
from live.logger import TradeLogger
from live.state import StateManager

logger = logging.getLogger('live_runner')

CANDLE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


class SymbolSession:
    """Per-symbol live state: strategy, lock, last processed candle."""

    def __init__(self, symbol: str, strategy: GridStrategy, trade_logger: TradeLogger = None):
        self.symbol = symbol
        self.strategy = strategy
        self.trade_logger = trade_logger
        self.lock = threading.Lock()
        self.last_bar_ts = 0
        self.enabled = True
        self.passes = 0
        self.skipped_busy = 0


class LiveRunner:

    def __init__(self, executor: BinanceExecutor, symbols: list, strategy_config: dict,
                 live_config: dict, state_manager: StateManager, oracle=None,
                 log_trades: bool = True):
        self.executor = executor
        self.symbols = list(symbols)
        self.config = dict(strategy_config)
        self.live_config = live_config
        self.state = state_manager
        self.oracle = oracle
        self.log_trades = log_trades

        self.timeframe = live_config.get('timeframe', '15m')
        self.buffer_size = live_config.get('buffer_size', 200)
        self.interval = live_config.get('interval_seconds', 60)

        self.sessions = {}
        self._stop = threading.Event()
        self._running = False
        self._session_start = None
        self._pool = ThreadPoolExecutor(max_workers=max(1, len(self.symbols)),
                                        thread_name_prefix='grid')

    # ─── Initialization ──────────────────────────────────────────

    def _build_session(self, symbol: str) -> SymbolSession:
        events = EventBus(keep_history=False)
        strategy = GridStrategy(
            dict(self.config, symbol=symbol),
            oracle=self.oracle,
            execution=ExchangeExecution(self.executor, self.config.get('taker_fee', 0.0005)),
            events=events,
        )
        trade_logger = None
        if self.log_trades:
            trade_logger = TradeLogger(self.live_config.get('log_dir', 'data/live_logs'),
                                       symbol, self.live_config.get('log_level', 'INFO'))
            trade_logger.attach(events)
        return SymbolSession(symbol, strategy, trade_logger)

    def initialize(self, resume: bool = False) -> bool:
        """Create one session per symbol, restoring saved ledgers when resuming."""
        for symbol in self.symbols:
            try:
                session = self._build_session(symbol)
            except GridError as e:
                logger.error(f"[{symbol}] Invalid configuration: {e}")
                return False

            if resume:
                saved = self.state.load_ledger_state(symbol)
                if saved:
                    runner_state = saved.pop('runner', {})
                    session.strategy.restore(saved)
                    session.last_bar_ts = runner_state.get('last_bar_ts', 0)
                    logger.info(f"[{symbol}] Resumed: {len(session.strategy.ledger.positions)} "
                                f"open positions, gen {session.strategy.ledger.generation}")
            self.executor.set_leverage(symbol, self.config.get('leverage', 1.0))
            self.sessions[symbol] = session

        self._session_start = datetime.now(timezone.utc)
        logger.info(f"LiveRunner initialized for {', '.join(self.symbols)}")
        return True

    # ─── Main Loop ───────────────────────────────────────────────

    def run(self):
        """Main execution loop. Runs until shutdown()."""
        self._running = True
        logger.info(f"LiveRunner started, interval {self.interval}s")
        while not self._stop.is_set():
            started = time.time()
            self.run_cycle()
            self._stop.wait(max(0.0, self.interval - (time.time() - started)))
        self._running = False

    def run_cycle(self, wait: bool = True) -> list:
        """Submit one pass per symbol. Symbols whose last pass is still running are skipped."""
        futures = [self._pool.submit(self.evaluate_symbol, symbol)
                   for symbol, s in self.sessions.items() if s.enabled]
        if wait:
            return [f.result() for f in futures]
        return futures

    def evaluate_symbol(self, symbol: str) -> bool:
        """One guarded pass for `symbol`. Returns False when skipped."""
        session = self.sessions[symbol]
        if not session.lock.acquire(blocking=False):
            session.skipped_busy += 1
            logger.warning(f"[{symbol}] Previous pass still running, skipping this interval")
            return False
        try:
            self._process_new_candles(session)
            session.passes += 1
            return True
        except RiskRejected as e:
            session.enabled = False
            logger.error(f"[{symbol}] Grid rejected by risk gate, symbol disabled: {e}")
            return False
        except GridError as e:
            logger.error(f"[{symbol}] Pass failed: {e}", exc_info=True)
            return False
        finally:
            session.lock.release()

    def _fetch_closed_candles(self, symbol: str) -> pd.DataFrame:
        rows = self.executor.get_latest_candles(symbol, self.timeframe, limit=self.buffer_size)
        # Last row is the still-open candle
        rows = rows[:-1] if len(rows) > 1 else []
        df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
        return df.astype({'timestamp': 'int64', 'open': 'float64', 'high': 'float64',
                          'low': 'float64', 'close': 'float64', 'volume': 'float64'})

    def _process_new_candles(self, session: SymbolSession):
        df = self._fetch_closed_candles(session.symbol)
        if df.empty:
            logger.warning(f"[{session.symbol}] No candles returned")
            return

        strategy = session.strategy
        try:
            signals = prepare_signals(df, strategy.config.signals)
        except InsufficientData as e:
            logger.warning(f"[{session.symbol}] {e}; exits only")
            signals = None

        funding_rate = self.executor.get_funding_rate(session.symbol)
        new_rows = [i for i in range(len(df)) if df['timestamp'].iloc[i] > session.last_bar_ts]
        if session.last_bar_ts == 0 and new_rows:
            # Fresh start: only the latest closed candle is traded
            new_rows = new_rows[-1:]

        for i in new_rows:
            row = df.iloc[i]
            bar = {'timestamp': float(row['timestamp']), 'open': float(row['open']),
                   'high': float(row['high']), 'low': float(row['low']),
                   'close': float(row['close']), 'fundingRate': funding_rate}
            snapshot = None
            if signals is not None and i >= 1:
                try:
                    snapshot = build_signal_snapshot(signals, i - 1, strategy.config.signals)
                except InsufficientData:
                    snapshot = None

            closed = strategy.process_bar(bar, snapshot)
            session.last_bar_ts = int(row['timestamp'])
            self._record(session, closed)

        if new_rows:
            self._persist(session)
            ledger = strategy.ledger
            if session.trade_logger is not None:
                session.trade_logger.log_equity(session.last_bar_ts, ledger.equity(),
                                                ledger.unrealized_pnl(), len(ledger.positions))

    def _record(self, session: SymbolSession, trades: list):
        for trade in trades:
            self.state.save_trade(trade.to_dict())
            if session.trade_logger is not None:
                session.trade_logger.record_trade(trade)

    def _persist(self, session: SymbolSession):
        state = session.strategy.ledger.get_state()
        state['runner'] = {'last_bar_ts': session.last_bar_ts}
        self.state.save_ledger_state(session.symbol, state)

    # ─── Shutdown ────────────────────────────────────────────────

    def shutdown(self):
        """Graceful shutdown: save state, keep positions open."""
        if self._stop.is_set():
            return
        self._stop.set()
        logger.info("Initiating graceful shutdown...")
        self._pool.shutdown(wait=True)
        for session in self.sessions.values():
            if session.strategy.ledger is not None:
                self._persist(session)
            self._summarize(session)
            session.strategy.close()
        logger.info("Shutdown complete. Positions left open on exchange.")

    def emergency_shutdown(self):
        """Close every open position at market, then save state."""
        self._stop.set()
        logger.critical("EMERGENCY SHUTDOWN — closing all positions")
        self._pool.shutdown(wait=True)
        for session in self.sessions.values():
            strategy = session.strategy
            if strategy.ledger is None:
                continue
            with session.lock:
                price = self.executor.get_ticker_price(session.symbol) or strategy.ledger.last_price
                closed = strategy.close_all(price, time.time() * 1000, EXIT_MANUAL)
                self._record(session, closed)
                self._persist(session)
            self._summarize(session)
            strategy.close()
        logger.critical("Emergency shutdown complete. All positions closed.")

    def _summarize(self, session: SymbolSession):
        if session.trade_logger is None:
            return
        duration = 0.0
        if self._session_start:
            duration = (datetime.now(timezone.utc) - self._session_start).total_seconds() / 3600
        session.trade_logger.log_session_summary(duration, {'passes': session.passes})

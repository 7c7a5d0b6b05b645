"""
TradeLogger — Human-readable trade journal for live runs.

Provides:
  - Console output (formatted)
  - File logging with rotation, one file per symbol
  - EventBus listener: fills, closes, rebalances, risk rejections
  - Running aggregate metrics (win rate, profit factor, Sharpe estimate)
"""
import os
import logging
import logging.handlers
import math
from datetime import datetime, timezone

import numpy as np

from engine.events import (
    EVENT_LEVEL_FILLED, EVENT_LEVEL_CLOSED, EVENT_REBALANCED, EVENT_RISK_REJECTED,
)

LOG_FORMAT = '%(asctime)s | %(name)-12s | %(levelname)-7s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(log_dir: str = None, log_level: str = 'INFO', filename: str = 'engine.log'):
    """Root logger: console + (optionally) rotating file under log_dir."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(ch)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, filename), maxBytes=10 * 1024 * 1024, backupCount=5)
        fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(fh)
    return root


class TradeLogger:

    def __init__(self, log_dir: str, symbol: str, log_level: str = 'INFO'):
        self.symbol = symbol
        os.makedirs(log_dir, exist_ok=True)

        self._trade_pnls = []
        self._hold_hours = []
        self._gross_profit = 0.0
        self._gross_loss = 0.0
        self._wins = 0
        self.counts = {'fills': 0, 'closes': 0, 'rebalances': 0, 'rejections': 0}

        safe = symbol.replace('/', '').replace(':', '_')
        self._log = logging.getLogger(f'trades.{safe}')
        self._log.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        self._log.propagate = False

        # Avoid duplicate handlers on re-init
        if not self._log.handlers:
            ch = logging.StreamHandler()
            ch.setFormatter(logging.Formatter('%(message)s'))
            self._log.addHandler(ch)

            # 10MB, 5 backups
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, f'{safe}.log'), maxBytes=10 * 1024 * 1024, backupCount=5)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter('%(asctime)s | %(message)s', datefmt=DATE_FORMAT))
            self._log.addHandler(fh)

    def attach(self, events):
        """Subscribe to an EventBus; every event type is journaled."""
        events.subscribe(self.on_event)

    def on_event(self, event: dict):
        kind = event['type']
        dt = _ms_to_str(event.get('timestamp', 0))
        if kind == EVENT_LEVEL_FILLED:
            self.counts['fills'] += 1
            self._log.info(
                f"[{dt}] OPEN {event['side'].upper()} L{event['level_id']} | {self.symbol}\n"
                f"  Price: ${event['price']:,.4f} | Size: {event['size']:.6f} | "
                f"SL: {_fmt_price(event.get('stop_loss'))} | TP: {_fmt_price(event.get('take_profit'))}")
        elif kind == EVENT_LEVEL_CLOSED:
            self.counts['closes'] += 1
            self._log.info(
                f"[{dt}] CLOSE {event['side'].upper()} #{event['position_id']} "
                f"({event['reason']}) | {self.symbol}\n"
                f"  Price: ${event['price']:,.4f} | PnL: {_fmt_pnl(event['net_pnl'])}")
        elif kind == EVENT_REBALANCED:
            self.counts['rebalances'] += 1
            self._log.info(
                f"[{dt}] REBALANCE | {self.symbol} | "
                f"center ${event['old_center']:,.4f} → ${event['new_center']:,.4f} "
                f"(gen {event['generation']}, spacing {event['spacing_pct']:.3f}%)")
        elif kind == EVENT_RISK_REJECTED:
            self.counts['rejections'] += 1
            self._log.info(f"[{dt}] REJECTED {event['action']} {event.get('side') or ''} | "
                           f"{self.symbol} | {event['reason']}")

    def record_trade(self, trade):
        """Fold a ClosedTrade into the running stats."""
        pnl = trade.net_pnl
        self._trade_pnls.append(pnl)
        self._hold_hours.append(trade.hold_time / 3_600_000.0)
        if pnl > 0:
            self._wins += 1
            self._gross_profit += pnl
        else:
            self._gross_loss += abs(pnl)

    def log_equity(self, timestamp: float, equity: float, unrealized: float, open_positions: int):
        self._log.info(f"[{_ms_to_str(timestamp)}] EQUITY | ${equity:,.2f} | "
                       f"UPnL: ${unrealized:+,.2f} | Open: {open_positions}")

    def get_running_metrics(self) -> dict:
        total = len(self._trade_pnls)
        if total == 0:
            return {'total_trades': 0, 'win_rate_pct': 0.0, 'profit_factor': 0.0,
                    'total_pnl': 0.0, 'avg_hold_hours': 0.0, 'estimated_sharpe': 0.0}

        pnls = self._trade_pnls
        if len(pnls) > 1:
            # Annualize assuming ~6.5 closes/day
            est_sharpe = np.mean(pnls) / max(np.std(pnls), 1e-9) * math.sqrt(365 * 6.5)
        else:
            est_sharpe = 0.0
        pf = (self._gross_profit / self._gross_loss if self._gross_loss > 0
              else float('inf') if self._gross_profit > 0 else 0.0)
        return {
            'total_trades': total,
            'win_rate_pct': round(self._wins / total * 100, 1),
            'profit_factor': round(pf, 3) if math.isfinite(pf) else pf,
            'total_pnl': round(sum(pnls), 2),
            'avg_hold_hours': round(float(np.mean(self._hold_hours)), 1),
            'estimated_sharpe': round(float(est_sharpe), 3),
        }

    def log_session_summary(self, session_duration_hours: float, extra: dict = None):
        m = self.get_running_metrics()
        m.update(self.counts)
        m.update(extra or {})
        border = '=' * 62
        self._log.info(f"\n{border}")
        self._log.info(f"  SESSION SUMMARY — {self.symbol}")
        self._log.info(f"  Duration: {session_duration_hours:.1f} hours")
        self._log.info(border)
        self._log.info(f"  Total Trades:    {m['total_trades']}")
        self._log.info(f"  Win Rate:        {m['win_rate_pct']:.1f}%")
        self._log.info(f"  Profit Factor:   {m['profit_factor']:.3f}")
        self._log.info(f"  Total PnL:       ${m['total_pnl']:+,.2f}")
        self._log.info(f"  Avg Hold:        {m['avg_hold_hours']:.1f}h")
        self._log.info(f"  Fills/Closes:    {m['fills']}/{m['closes']}")
        self._log.info(f"  Rebalances:      {m['rebalances']}")
        self._log.info(f"  Rejections:      {m['rejections']}")
        self._log.info(border)


def _fmt_price(p) -> str:
    return '-' if p is None else f"${p:,.4f}"


def _fmt_pnl(pnl: float) -> str:
    return f"+${pnl:,.2f}" if pnl >= 0 else f"-${abs(pnl):,.2f}"


def _ms_to_str(ms) -> str:
    if not ms or ms <= 0:
        return datetime.now(timezone.utc).strftime(DATE_FORMAT)
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime(DATE_FORMAT)
    except (OSError, ValueError, OverflowError):
        return datetime.now(timezone.utc).strftime(DATE_FORMAT)

"""
GridStrategy main orchestrator.

Real/virtual grid for perpetual futures. One evaluation pass per candle
(backtest) or per interval (live), identical in both modes.

Per-candle order (process_bar):
  1. Mark open positions to the candle close
  2. Stop-loss / take-profit / liquidation against the candle high/low
     (stop-loss wins when both are touched)
  3. Evaluation pass: rules (+ oracle) → risk gate → ledger
     - decisions use the previous bar's indicators
     - real levels are chosen at the candle open, fills use the candle range
  4. Funding at each settlement boundary (backtest only)
  5. Equity point (taken by the caller)
"""
import logging
from typing import Optional

import numpy as np

from config import STRATEGY_PARAMS
from core.errors import (
    InsufficientData, IntegrityError, ExternalOrderFailure,
    RiskRejected, UnprofitableSpacing,
    REASON_UNPROFITABLE_SPACING,
)
from core.funding import apply_funding, is_funding_boundary
from core.grid import drift_pct
from core.metrics import compute_metrics
from core.risk import RiskGate
from core.signals import prepare_signals, build_signal_snapshot
from engine.decision import DecisionEngine
from engine.events import (
    EventBus, EVENT_LEVEL_FILLED, EVENT_LEVEL_CLOSED,
    EVENT_REBALANCED, EVENT_RISK_REJECTED,
)
from engine.ledger import PositionLedger
from engine.schema import StrategyConfig
from engine.types import (
    Fill, ProposedAction, BacktestResult,
    SIDE_LONG, SIDE_SHORT, SIDES, STATUS_PENDING, opposite, side_sign,
    ACTION_HOLD, ACTION_OPEN, ACTION_BUILD, ACTION_REBALANCE,
    ACTION_FLATTEN_OR_CLUSTER, ACTION_TIGHTEN_RISK,
    ACTION_CUT_LONG, ACTION_CUT_SHORT, ACTION_CLOSE_ALL, ACTION_EMERGENCY_REBALANCE,
    EXIT_STOP_LOSS, EXIT_TAKE_PROFIT, EXIT_PANIC_FLATTEN, EXIT_ORACLE_CUT,
    EXIT_LIQUIDATION, EXIT_END_OF_TEST,
)

logger = logging.getLogger('strategy')


class SimulatedExecution:
    """
    Backtest fills: market order at the trigger price worsened by a fixed
    slippage, taker fee on the filled notional.
    """

    def __init__(self, cost):
        self.cost = cost

    def _fill(self, side_sign_: int, size: float, price: float) -> Fill:
        # Buying pays up, selling gives up
        fill_price = price * (1.0 + side_sign_ * self.cost.slippage)
        fee = abs(size) * fill_price * self.cost.taker_fee
        return Fill(price=fill_price, fee=fee,
                    slippage_cost=abs(fill_price - price) * abs(size))

    def open(self, symbol: str, side: str, size: float, leverage: float,
             price: float) -> Fill:
        return self._fill(side_sign(side), size, price)

    def close(self, position, price: float) -> Fill:
        return self._fill(-side_sign(position.side), position.size, price)


class GridStrategy:
    """Real/virtual grid engine for one symbol."""

    def __init__(self, config=None, oracle=None, execution=None,
                 events: Optional[EventBus] = None, simulate_funding: bool = True):
        if config is None:
            config = StrategyConfig.from_params(STRATEGY_PARAMS)
        elif isinstance(config, dict):
            config = StrategyConfig.from_params(config)
        self.config = config
        self.symbol = config.grid.symbol
        self.decision_engine = DecisionEngine(config, oracle=oracle)
        self.risk_gate = RiskGate()
        self.events = events or EventBus()
        self.execution = execution or SimulatedExecution(config.cost)
        self.simulate_funding = simulate_funding

        self.ledger: Optional[PositionLedger] = None
        self.last_decision = None
        self._prev_ts = None

        self.metrics = {
            'bars_evaluated': 0,
            'bars_skipped': 0,
            'fills': 0,
            'rebalances': 0,
            'panic_cycles': 0,
            'tighten_cycles': 0,
            'oracle_actions': 0,
            'order_failures': 0,
            'integrity_errors': 0,
            'trailing_updates': 0,
            'slippage_cost': 0.0,
            'funding_pnl': 0.0,
        }

    # ─── Setup ────────────────────────────────────────────────────

    def initialize(self, price: float, timestamp: float = 0.0) -> PositionLedger:
        """
        Build the first ladder. Center comes from the config, else `price`.

        Raises RiskRejected (UnprofitableSpacing, leverage cap) when the
        grid itself fails the risk gate.
        """
        grid = self.config.grid
        center = grid.center_price if grid.center_price > 0 else float(price)
        action = ProposedAction(kind=ACTION_BUILD, symbol=self.symbol,
                                leverage=grid.leverage, spacing_pct=grid.spacing_pct)
        verdict = self.risk_gate.validate(action, {}, self.config)
        if not verdict:
            if verdict.reason == REASON_UNPROFITABLE_SPACING:
                raise UnprofitableSpacing(verdict.detail)
            raise RiskRejected(verdict.reason, verdict.detail)

        self.ledger = PositionLedger(grid.with_center(center), created_at=timestamp,
                                     cost=self.config.cost)
        logger.info(f"[{self.symbol}] Grid built around {center:.4f}: "
                    f"{grid.level_count} levels @ {grid.spacing_pct}% "
                    f"(${grid.size_notional:.2f} notional each)")
        return self.ledger

    def restore(self, state: dict) -> PositionLedger:
        """Resume from a saved ledger snapshot."""
        self.ledger = PositionLedger.from_state(state, config=self.config.grid.with_center(
            state['center_price']))
        self.ledger.check_consistency(self.ledger.equity())
        return self.ledger

    # ─── One candle ───────────────────────────────────────────────

    def process_bar(self, bar: dict, snapshot=None) -> list:
        """
        Run one full pass for `bar` ({timestamp, open, high, low, close,
        fundingRate?}). `snapshot` is the SignalSnapshot of the previous bar,
        or None while indicators are warming up.

        Returns the ClosedTrades produced during this bar.
        """
        ts = float(bar['timestamp'])
        if self.ledger is None:
            self.initialize(bar['open'], ts)

        closed = []
        self.ledger.mark(bar['close'])
        closed += self._check_exits(bar)

        if snapshot is None:
            self.metrics['bars_skipped'] += 1
        else:
            closed += self.evaluate(snapshot, bar)
            self.metrics['bars_evaluated'] += 1

        if self.config.risk.use_trailing_stop:
            self._trail_stops(bar['close'])

        if self.simulate_funding and self._prev_ts is not None:
            self._apply_funding(bar)
        self._prev_ts = ts

        self.ledger.mark(bar['close'])
        return closed

    def evaluate(self, snapshot, bar: dict) -> list:
        """Decision → risk gate → ledger. The shared live/backtest evaluation pass."""
        ledger = self.ledger
        ref = float(bar['open'])
        ts = float(bar['timestamp'])
        decision = self.decision_engine.decide(snapshot, ledger)
        self.last_decision = decision

        closed = []
        target = None
        action = decision.action

        if action == ACTION_FLATTEN_OR_CLUSTER:
            self.metrics['panic_cycles'] += 1
            against = opposite(decision.cluster_side)
            closed += self._close_side(against, ref, ts, EXIT_PANIC_FLATTEN)
            target = self.config.grid.min_real_positions
            logger.warning(f"[{self.symbol}] Velocity panic ({snapshot.velocity_pct:+.2f}%): "
                           f"flattened {against}, clustering {decision.cluster_side}")
        elif action == ACTION_TIGHTEN_RISK:
            self.metrics['tighten_cycles'] += 1
            self._tighten_stops(ref, decision.tighten_factor)
        elif action in (ACTION_CUT_LONG, ACTION_CUT_SHORT, ACTION_CLOSE_ALL):
            self.metrics['oracle_actions'] += 1
            sides = {ACTION_CUT_LONG: (SIDE_LONG,), ACTION_CUT_SHORT: (SIDE_SHORT,),
                     ACTION_CLOSE_ALL: SIDES}[action]
            for side in sides:
                closed += self._close_side(side, ref, ts, EXIT_ORACLE_CUT)
        elif action == ACTION_EMERGENCY_REBALANCE:
            self.metrics['oracle_actions'] += 1
            self._rebalance(ref, ts, decision)

        if action not in (ACTION_FLATTEN_OR_CLUSTER, ACTION_TIGHTEN_RISK,
                          ACTION_EMERGENCY_REBALANCE):
            if drift_pct(ref, ledger.center_price) > self.config.grid.rebalance_threshold_pct:
                self._rebalance(ref, ts, decision)

        try:
            ledger.recompute_real_status(ref, decision.preferred_side, target)
        except IntegrityError:
            self.metrics['integrity_errors'] += 1
            return closed

        self._process_fills(bar, decision)
        return closed

    # ─── Fills ────────────────────────────────────────────────────

    def _process_fills(self, bar: dict, decision):
        ledger = self.ledger
        grid = self.config.grid
        ref = float(bar['open'])
        ts = float(bar['timestamp'])
        low, high = float(bar['low']), float(bar['high'])

        touched = [lv for lv in ledger.pending_real_levels() if low <= lv.price <= high]
        touched.sort(key=lambda lv: (lv.distance(ref), lv.id))

        for level in touched:
            action = ProposedAction(
                kind=ACTION_OPEN, symbol=self.symbol, side=level.side,
                notional=level.size_notional, leverage=grid.leverage,
                level_id=level.id,
                trend_justified=(decision.preferred_side == level.side),
            )

            verdict = self.risk_gate.validate(action, ledger.exposure(), self.config,
                                              blocked=decision.blocked_sides)
            if not verdict:
                self._emit_rejection(action, verdict.reason, verdict.detail, ts)
                continue

            try:
                fill = self.execution.open(self.symbol, level.side, level.size_base,
                                           grid.leverage, level.price)
            except ExternalOrderFailure as e:
                # Level stays pending; next pass may retry
                self.metrics['order_failures'] += 1
                logger.error(f"[{self.symbol}] Open failed for level {level.id}: {e}")
                continue

            stop_loss, take_profit = self._stops_for(level.side, fill.price, decision)
            position = ledger.open_level(level.id, fill.price, ts, stop_loss, take_profit,
                                         fee=fill.fee)
            self.metrics['fills'] += 1
            self.metrics['slippage_cost'] += fill.slippage_cost
            self.events.emit(EVENT_LEVEL_FILLED, self.symbol, ts,
                             level_id=level.id, position_id=position.id,
                             side=level.side, price=fill.price, size=position.size,
                             fee=fill.fee, stop_loss=stop_loss, take_profit=take_profit)
            logger.debug(f"[{self.symbol}] Filled {level.side} L{level.id} @ {fill.price:.4f}")

    def _stops_for(self, side: str, entry: float, decision) -> tuple:
        sign = side_sign(side)
        if decision is not None and decision.sl_distance and decision.tp_distance:
            return (entry - sign * decision.sl_distance,
                    entry + sign * decision.tp_distance)
        grid = self.config.grid
        return (entry * (1.0 - sign * grid.stop_loss_pct / 100.0),
                entry * (1.0 + sign * grid.take_profit_pct / 100.0))

    # ─── Exits ────────────────────────────────────────────────────

    def _check_exits(self, bar: dict) -> list:
        """SL/TP/liquidation against the candle range. SL has priority over TP."""
        ts = float(bar['timestamp'])
        low, high = float(bar['low']), float(bar['high'])
        liq_pct = self.config.risk.liquidation_loss_pct
        closed = []

        for position in sorted(self.ledger.open_positions(), key=lambda p: p.id):
            sl, tp = position.stop_loss, position.take_profit
            trigger, reason = None, None
            if position.side == SIDE_LONG:
                if sl is not None and low <= sl:
                    trigger, reason = sl, EXIT_STOP_LOSS
                elif tp is not None and high >= tp:
                    trigger, reason = tp, EXIT_TAKE_PROFIT
            else:
                if sl is not None and high >= sl:
                    trigger, reason = sl, EXIT_STOP_LOSS
                elif tp is not None and low <= tp:
                    trigger, reason = tp, EXIT_TAKE_PROFIT

            if trigger is None:
                # Local liquidation guard: loss of liq_pct% of margin
                max_move = liq_pct / position.leverage
                worst = low if position.side == SIDE_LONG else high
                if position.adverse_move_pct(worst) >= max_move:
                    trigger = position.entry_price * (
                        1.0 - side_sign(position.side) * max_move / 100.0)
                    reason = EXIT_LIQUIDATION
                    logger.warning(f"[{self.symbol}] Liquidation guard hit on "
                                   f"{position.side} #{position.id}")

            if trigger is not None:
                trade = self._close(position, trigger, ts, reason)
                if trade is not None:
                    closed.append(trade)
        return closed

    def _close(self, position, price: float, ts: float, reason: str):
        try:
            fill = self.execution.close(position, price)
        except ExternalOrderFailure as e:
            self.metrics['order_failures'] += 1
            logger.error(f"[{self.symbol}] Close failed for position {position.id}: {e}")
            return None
        trade = self.ledger.close_position(position.id, fill.price, reason, ts, fee=fill.fee)
        self.metrics['slippage_cost'] += fill.slippage_cost
        self.events.emit(EVENT_LEVEL_CLOSED, self.symbol, ts,
                         level_id=trade.level_id, position_id=trade.position_id,
                         side=trade.side, price=trade.exit_price, reason=reason,
                         pnl=trade.realized_pnl, net_pnl=trade.net_pnl)
        return trade

    def _close_side(self, side: str, price: float, ts: float, reason: str) -> list:
        closed = []
        for position in sorted(self.ledger.open_positions(side), key=lambda p: p.id):
            trade = self._close(position, price, ts, reason)
            if trade is not None:
                closed.append(trade)
        return closed

    def close_all(self, price: float, ts: float, reason: str = EXIT_END_OF_TEST) -> list:
        closed = []
        for side in SIDES:
            closed += self._close_side(side, price, ts, reason)
        return closed

    # ─── Stop management ──────────────────────────────────────────

    def _tighten_stops(self, price: float, factor: float):
        """Pull every stop `factor` of the way toward price. Only ever tighter."""
        default_pct = self.config.grid.stop_loss_pct / 100.0
        for p in self.ledger.open_positions():
            sign = side_sign(p.side)
            current = p.stop_loss if p.stop_loss is not None else price * (1 - sign * default_pct)
            new_stop = price - (price - current) * factor
            # long: stop rises toward price; short: stop falls toward price
            if sign * (new_stop - current) > 0 and sign * (price - new_stop) > 0:
                self.ledger.update_stops(p.id, stop_loss=new_stop)

    def _trail_stops(self, close: float):
        pct = self.config.grid.stop_loss_pct / 100.0
        for p in self.ledger.open_positions():
            sign = side_sign(p.side)
            candidate = close * (1.0 - sign * pct)
            if p.stop_loss is None or sign * (candidate - p.stop_loss) > 0:
                self.ledger.update_stops(p.id, stop_loss=candidate)
                self.metrics['trailing_updates'] += 1

    # ─── Rebalance ────────────────────────────────────────────────

    def _rebalance(self, price: float, ts: float, decision) -> bool:
        spacing = decision.spacing_pct or self.ledger.spacing_pct
        action = ProposedAction(kind=ACTION_REBALANCE, symbol=self.symbol,
                                leverage=self.config.grid.leverage, spacing_pct=spacing)
        verdict = self.risk_gate.validate(action, self.ledger.exposure(), self.config)
        if not verdict:
            self._emit_rejection(action, verdict.reason, verdict.detail, ts)
            return False

        old_center = self.ledger.center_price
        try:
            self.ledger.rebuild(price, ts, spacing, decision.preferred_side)
        except IntegrityError:
            self.metrics['integrity_errors'] += 1
            return False
        self.metrics['rebalances'] += 1
        self.events.emit(EVENT_REBALANCED, self.symbol, ts,
                         old_center=old_center, new_center=price, spacing_pct=spacing,
                         generation=self.ledger.generation,
                         carried_positions=len(self.ledger.positions))
        return True

    # ─── Funding ──────────────────────────────────────────────────

    def _apply_funding(self, bar: dict):
        cost = self.config.cost
        ts = float(bar['timestamp'])
        if not is_funding_boundary(self._prev_ts, ts, cost.funding_interval_hours):
            return
        rate = bar.get('fundingRate')
        if rate is None or not np.isfinite(rate):
            rate = cost.default_funding_rate
        if rate == 0 or not self.ledger.positions:
            return
        f = self.ledger.apply_funding(float(rate), float(bar['close']), apply_funding)
        self.metrics['funding_pnl'] += f

    # ─── Events helpers ───────────────────────────────────────────

    def _emit_rejection(self, action, reason: str, detail: str, ts: float):
        self.events.emit(EVENT_RISK_REJECTED, self.symbol, ts,
                         action=action.kind, side=action.side, level_id=action.level_id,
                         reason=reason, detail=detail)

    # ─── Backtest kernel ──────────────────────────────────────────

    def run(self, df, abort_event=None) -> BacktestResult:
        """
        Replay candles one by one.

        Lookahead-free: bar i decides with indicators from bar i-1 and
        fills against bar i's range. `abort_event` (threading.Event) is
        checked between candles; an aborted run returns the partial result.
        """
        n = len(df)
        if n == 0:
            raise InsufficientData('backtest', 1, 0)

        try:
            signals = prepare_signals(df, self.config.signals)
        except InsufficientData as e:
            logger.warning(f"[{self.symbol}] {e}; replay runs without evaluation")
            signals = None

        ts_arr = df['timestamp'].values.astype(np.float64)
        opens = df['open'].values.astype(np.float64)
        highs = df['high'].values.astype(np.float64)
        lows = df['low'].values.astype(np.float64)
        closes = df['close'].values.astype(np.float64)
        funding = (df['fundingRate'].values.astype(np.float64)
                   if 'fundingRate' in df.columns else None)

        check_every = 500
        equity_curve = []
        trades = []
        aborted = False

        for i in range(n):
            if abort_event is not None and abort_event.is_set():
                aborted = True
                logger.info(f"[{self.symbol}] Backtest aborted at bar {i}/{n}")
                break

            bar = {
                'timestamp': ts_arr[i], 'open': opens[i], 'high': highs[i],
                'low': lows[i], 'close': closes[i],
            }
            if funding is not None:
                bar['fundingRate'] = funding[i]

            snapshot = None
            if signals is not None and i >= 1:
                try:
                    snapshot = build_signal_snapshot(signals, i - 1, self.config.signals)
                except InsufficientData:
                    snapshot = None

            trades += self.process_bar(bar, snapshot)

            equity = self.ledger.equity(closes[i])
            if i % check_every == 0:
                self.ledger.check_consistency(equity, closes[i])
            equity_curve.append({'timestamp': float(ts_arr[i]), 'equity': float(equity)})

        processed = len(equity_curve)
        if processed and not aborted and self.config.close_at_end:
            last = processed - 1
            trades += self.close_all(closes[last], float(ts_arr[last]), EXIT_END_OF_TEST)
            equity_curve[-1]['equity'] = float(self.ledger.equity(closes[last]))

        if processed:
            self.ledger.check_consistency(equity_curve[-1]['equity'], closes[processed - 1])

        return self._build_result(equity_curve, trades, closes[:processed], aborted)

    def _build_result(self, equity_curve, trades, closes, aborted) -> BacktestResult:
        capital = self.config.grid.total_capital
        if equity_curve:
            metrics = compute_metrics(equity_curve, trades, capital, closes)
        else:
            metrics = compute_metrics([{'timestamp': 0.0, 'equity': capital}], trades, capital)
        metrics['total_fees'] = round(self.ledger.total_fees, 4) if self.ledger else 0.0
        metrics['open_positions'] = len(self.ledger.positions) if self.ledger else 0
        metrics.update({k: (round(v, 4) if isinstance(v, float) else v)
                        for k, v in self.metrics.items()})

        return BacktestResult(
            symbol=self.symbol,
            equity_curve=equity_curve,
            trades=trades,
            metrics=metrics,
            aborted=aborted,
            bars_processed=len(equity_curve),
            rejections=dict(self.risk_gate.rejections),
            event_counts=dict(self.events.counts),
        )

    def close(self):
        self.decision_engine.close()

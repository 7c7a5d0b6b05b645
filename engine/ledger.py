"""
Position Ledger.

Owns the ladder of GridLevels and every open/closed Position for one
symbol. Enforces:
  - 2 ≤ real levels ≤ 4 (configurable inside those bounds)
  - level status only moves pending → open → closed
  - a level holding an open position stays real until it closes

Accounting: realized_pnl on positions is gross price PnL. Fees and
funding are tracked as separate accounts, so

    equity - total_capital == Σrealized + Σunrealized - fees + funding
"""
import json
import logging
from dataclasses import asdict
from typing import Optional

from core.errors import InvalidTransition, NotFound, IntegrityError
from core.grid import build_grid
from engine.schema import GridConfig
from engine.types import (
    GridLevel, Position, ClosedTrade,
    SIDE_LONG, SIDE_SHORT, SIDES,
    STATUS_PENDING, STATUS_OPEN, STATUS_CLOSED,
)

logger = logging.getLogger('ledger')

SNAPSHOT_VERSION = 1


class PositionLedger:

    def __init__(self, config, created_at: float = 0.0, cost=None, _empty: bool = False):
        """
        Args:
            config: GridConfig; center_price must be set (> 0)
            created_at: timestamp stamped on the initial ladder
            cost: optional CostConfig → spacing profitability enforced on build
        """
        self.config = config
        self.symbol = config.symbol
        self.total_capital = config.total_capital
        self.levels = {}              # id → GridLevel (insertion order = price desc per build)
        self.positions = {}           # id → open Position
        self.closed_trades = []       # ClosedTrade, in close order
        self.generation = 0
        self.center_price = config.center_price
        self.spacing_pct = config.spacing_pct
        self.last_price = config.center_price
        self.realized_pnl = 0.0
        self.total_fees = 0.0
        self.funding_pnl = 0.0
        self._next_level_id = 0
        self._next_position_id = 0

        if _empty:
            return
        if config.center_price <= 0:
            raise ValueError("PositionLedger needs a positive center_price")

        for level in build_grid(config, created_at=created_at, start_id=0,
                                generation=0, cost=cost):
            self.levels[level.id] = level
        self._next_level_id = len(self.levels)
        self.recompute_real_status(config.center_price)

    # ─── Queries ──────────────────────────────────────────────────

    def get_level(self, level_id: int) -> GridLevel:
        level = self.levels.get(level_id)
        if level is None:
            raise NotFound(f"Level {level_id} not found")
        return level

    def real_levels(self) -> list:
        return [lv for lv in self.levels.values() if lv.is_real]

    def pending_real_levels(self) -> list:
        return [lv for lv in self.levels.values()
                if lv.is_real and lv.status == STATUS_PENDING]

    def active_levels(self) -> list:
        return [lv for lv in self.levels.values() if lv.status != STATUS_CLOSED]

    def open_positions(self, side: Optional[str] = None) -> list:
        return [p for p in self.positions.values() if side is None or p.side == side]

    def real_status_valid(self) -> bool:
        """min ≤ real ≤ max, and every open level is real."""
        cfg = self.config
        n_real = len(self.real_levels())
        return (cfg.min_real_positions <= n_real <= cfg.max_real_positions
                and all(lv.is_real for lv in self.levels.values()
                        if lv.status == STATUS_OPEN))

    def unrealized_pnl(self, price: Optional[float] = None) -> float:
        price = self.last_price if price is None else price
        return sum(p.unrealized_pnl(price) for p in self.positions.values())

    def equity(self, price: Optional[float] = None) -> float:
        return (self.total_capital + self.realized_pnl + self.unrealized_pnl(price)
                - self.total_fees + self.funding_pnl)

    def exposure(self) -> dict:
        """Snapshot consumed by the risk gate."""
        long_n = sum(p.notional for p in self.positions.values() if p.side == SIDE_LONG)
        short_n = sum(p.notional for p in self.positions.values() if p.side == SIDE_SHORT)
        return {
            'long_notional': long_n,
            'short_notional': short_n,
            'margin_used': sum(p.margin for p in self.positions.values()),
            'open_count': len(self.positions),
            'total_capital': self.total_capital,
        }

    def check_consistency(self, equity: float, price: Optional[float] = None,
                          tolerance: float = 1e-6) -> bool:
        """
        Raise IntegrityError unless `equity - total_capital` matches the
        realized + unrealized - fees + funding breakdown.
        """
        expected = (sum(t.realized_pnl for t in self.closed_trades)
                    + self.unrealized_pnl(price) - self.total_fees + self.funding_pnl)
        actual = equity - self.total_capital
        if abs(actual - expected) > tolerance * max(1.0, abs(self.total_capital)):
            raise IntegrityError(
                f"[{self.symbol}] PnL mismatch: equity-capital={actual:.8f} "
                f"vs breakdown={expected:.8f}")
        return True

    # ─── Real / virtual selection ─────────────────────────────────

    def recompute_real_status(self, current_price: float,
                              preferred_side: Optional[str] = None,
                              target: Optional[int] = None) -> list:
        """
        Pick which levels are capital-backed.

        Open levels are always real. The remaining slots (up to `target`,
        default max_real_positions) go to the closest pending levels,
        split evenly by side; an odd slot goes to `preferred_side`.
        Ties on distance: preferred side first, then lowest level id.

        Raises IntegrityError (state untouched) when fewer than
        min_real_positions levels can be made real, or when more than
        max_real_positions levels hold open positions.
        """
        cfg = self.config
        target = cfg.max_real_positions if target is None else target
        target = max(cfg.min_real_positions, min(target, cfg.max_real_positions))

        sticky = [lv for lv in self.levels.values() if lv.status == STATUS_OPEN]
        if len(sticky) > cfg.max_real_positions:
            msg = (f"[{self.symbol}] {len(sticky)} open levels exceed "
                   f"max_real_positions={cfg.max_real_positions}")
            logger.error(msg)
            raise IntegrityError(msg)

        def rank(lv):
            return (lv.distance(current_price), 0 if lv.side == preferred_side else 1, lv.id)

        candidates = {side: sorted((lv for lv in self.levels.values()
                                    if lv.status == STATUS_PENDING and lv.side == side),
                                   key=rank)
                      for side in SIDES}

        budget = max(target, len(sticky)) - len(sticky)
        if preferred_side in SIDES:
            first = preferred_side
        else:
            first = SIDE_LONG
        second = SIDE_SHORT if first == SIDE_LONG else SIDE_LONG
        quota = {first: target - target // 2, second: target // 2}

        chosen = {lv.id for lv in sticky}
        taken = {side: sum(1 for lv in sticky if lv.side == side) for side in SIDES}

        # Per-side fill up to quota
        for side in (first, second):
            for lv in candidates[side]:
                if budget <= 0 or taken[side] >= quota[side]:
                    break
                chosen.add(lv.id)
                taken[side] += 1
                budget -= 1

        # Leftover slots (one side short of candidates) → closest remaining
        if budget > 0:
            rest = sorted((lv for side in SIDES for lv in candidates[side]
                           if lv.id not in chosen), key=rank)
            for lv in rest[:budget]:
                chosen.add(lv.id)

        if len(chosen) < cfg.min_real_positions:
            msg = (f"[{self.symbol}] only {len(chosen)} levels available to be real, "
                   f"need {cfg.min_real_positions}; recompute rejected")
            logger.error(msg)
            raise IntegrityError(msg)

        for lv in self.levels.values():
            lv.is_real = lv.id in chosen
        return [self.levels[i] for i in sorted(chosen)]

    # ─── Transitions ──────────────────────────────────────────────

    def open_level(self, level_id: int, fill_price: float, timestamp: float = 0.0,
                   stop_loss: Optional[float] = None,
                   take_profit: Optional[float] = None,
                   fee: float = 0.0) -> Position:
        """pending → open. Only real levels can be opened."""
        level = self.get_level(level_id)
        if level.status != STATUS_PENDING:
            raise InvalidTransition(
                f"Level {level_id} is {level.status}, only pending levels can open")
        if not level.is_real:
            raise InvalidTransition(f"Level {level_id} is virtual, cannot open")

        position = Position(
            id=self._next_position_id,
            symbol=self.symbol,
            side=level.side,
            entry_price=fill_price,
            size=level.size_base,
            leverage=self.config.leverage,
            stop_loss=stop_loss,
            take_profit=take_profit,
            opened_at=timestamp,
            level_id=level.id,
            entry_fee=fee,
        )
        self._next_position_id += 1
        level.advance(STATUS_OPEN)
        level.position_id = position.id
        self.positions[position.id] = position
        self.total_fees += fee
        return position

    def close_position(self, position_id: int, exit_price: float, reason: str,
                       timestamp: float = 0.0, fee: float = 0.0) -> ClosedTrade:
        """
        open → closed. Re-lists the level as pending if it belongs to the
        current ladder, then re-picks real levels at last_price.
        """
        position = self.positions.get(position_id)
        if position is None:
            raise NotFound(f"No open position {position_id}")

        pnl = position.unrealized_pnl(exit_price)
        position.closed_at = timestamp
        position.realized_pnl = pnl
        del self.positions[position_id]

        self.realized_pnl += pnl
        self.total_fees += fee

        trade = ClosedTrade(
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            size=position.size,
            leverage=position.leverage,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            opened_at=position.opened_at,
            closed_at=timestamp,
            level_id=position.level_id,
            realized_pnl=pnl,
            fees=position.entry_fee + fee,
            funding=position.funding,
            exit_reason=reason,
        )
        self.closed_trades.append(trade)

        level = self.levels.get(position.level_id)
        if level is not None:
            level.advance(STATUS_CLOSED)
            level.is_real = False
            if level.generation == self.generation:
                self._relist(level, timestamp)
        # Refill the freed real slot
        self.recompute_real_status(self.last_price)
        return trade

    def update_stops(self, position_id: int, stop_loss: Optional[float] = None,
                     take_profit: Optional[float] = None) -> Position:
        position = self.positions.get(position_id)
        if position is None:
            raise NotFound(f"No open position {position_id}")
        if stop_loss is not None:
            position.stop_loss = stop_loss
        if take_profit is not None:
            position.take_profit = take_profit
        return position

    def mark(self, price: float) -> float:
        """Mark to market. Returns total unrealized PnL."""
        self.last_price = price
        return self.unrealized_pnl(price)

    def apply_funding(self, funding_rate: float, price: float, calc) -> float:
        """
        Apply one funding settlement to every open position.

        `calc(size, price, rate, side)` returns the PnL impact per position.
        """
        total = 0.0
        for p in self.positions.values():
            f = calc(p.size, price, funding_rate, p.side)
            p.funding += f
            total += f
        self.funding_pnl += total
        return total

    def rebuild(self, center_price: float, timestamp: float = 0.0,
                spacing_pct: Optional[float] = None,
                preferred_side: Optional[str] = None) -> list:
        """
        Regenerate the ladder around a new center.

        Open levels (and their positions) are carried forward untouched;
        pending levels of the previous ladder are discarded, closed ones
        are dropped (their history lives in closed_trades).
        """
        spacing = self.spacing_pct if spacing_pct is None else spacing_pct
        new_cfg = self.config.with_center(center_price).with_spacing(spacing)
        new_levels = build_grid(new_cfg, created_at=timestamp,
                                start_id=self._next_level_id,
                                generation=self.generation + 1)

        # Validate before mutating anything
        carried = {i: lv for i, lv in self.levels.items() if lv.status == STATUS_OPEN}
        old_state = (self.levels, self.generation, self.center_price,
                     self.spacing_pct, self._next_level_id)

        merged = dict(carried)
        for lv in new_levels:
            merged[lv.id] = lv
        self.levels = merged
        self.generation += 1
        self.center_price = center_price
        self.spacing_pct = spacing
        self._next_level_id += len(new_levels)
        try:
            self.recompute_real_status(center_price, preferred_side)
        except IntegrityError:
            (self.levels, self.generation, self.center_price,
             self.spacing_pct, self._next_level_id) = old_state
            raise

        logger.info(f"[{self.symbol}] Grid rebuilt around {center_price:.4f} "
                    f"(spacing {spacing:.3f}%, gen {self.generation}, "
                    f"{len(carried)} open carried)")
        return new_levels

    def _relist(self, closed_level: GridLevel, timestamp: float):
        level = GridLevel(
            id=self._next_level_id,
            price=closed_level.price,
            side=closed_level.side,
            size_notional=closed_level.size_notional,
            size_base=closed_level.size_base,
            index=closed_level.index,
            generation=closed_level.generation,
            created_at=timestamp,
        )
        self._next_level_id += 1
        self.levels[level.id] = level

    # ─── Snapshot / restore ───────────────────────────────────────

    def get_state(self) -> dict:
        return {
            'version': SNAPSHOT_VERSION,
            'symbol': self.symbol,
            'config': _config_dict(self.config),
            'generation': self.generation,
            'center_price': self.center_price,
            'spacing_pct': self.spacing_pct,
            'last_price': self.last_price,
            'realized_pnl': self.realized_pnl,
            'total_fees': self.total_fees,
            'funding_pnl': self.funding_pnl,
            'next_level_id': self._next_level_id,
            'next_position_id': self._next_position_id,
            'levels': [lv.to_dict() for lv in self.levels.values()],
            'positions': [p.to_dict() for p in self.positions.values()],
            'closed_trades': [t.to_dict() for t in self.closed_trades],
        }

    def to_json(self) -> str:
        return serialize_state(self.get_state())

    @classmethod
    def from_state(cls, state: dict, config=None) -> 'PositionLedger':
        """
        Rebuild a ledger from get_state() output.

        `config` overrides the stored GridConfig (e.g. after a restart
        with a new capital figure); by default the stored one is used.
        """
        if state.get('version') != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported ledger snapshot version {state.get('version')}")
        if config is None:
            config = GridConfig(**state['config'])

        ledger = cls(config, _empty=True)
        ledger.symbol = state['symbol']
        ledger.generation = state['generation']
        ledger.center_price = state['center_price']
        ledger.spacing_pct = state['spacing_pct']
        ledger.last_price = state['last_price']
        ledger.realized_pnl = state['realized_pnl']
        ledger.total_fees = state['total_fees']
        ledger.funding_pnl = state['funding_pnl']
        ledger._next_level_id = state['next_level_id']
        ledger._next_position_id = state['next_position_id']
        for d in state['levels']:
            lv = GridLevel.from_dict(d)
            ledger.levels[lv.id] = lv
        for d in state['positions']:
            p = Position.from_dict(d)
            ledger.positions[p.id] = p
        ledger.closed_trades = [ClosedTrade.from_dict(d) for d in state['closed_trades']]

        if not ledger.real_status_valid():
            logger.warning(f"[{ledger.symbol}] Snapshot real levels out of bounds, re-picking")
            ledger.recompute_real_status(ledger.last_price)
        return ledger

    @classmethod
    def from_json(cls, text: str, config=None) -> 'PositionLedger':
        return cls.from_state(json.loads(text), config)


def serialize_state(state: dict) -> str:
    """Canonical JSON form: sorted keys, fixed separators."""
    return json.dumps(state, sort_keys=True, separators=(',', ':'))


def _config_dict(config) -> dict:
    return asdict(config)

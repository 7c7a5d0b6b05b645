"""
Data structures for the real/virtual grid engine.

A ladder of GridLevels is owned by the PositionLedger. Only 2-4 levels
are "real" (capital-backed) at a time; the rest are virtual and are
promoted when price comes close to them.
"""
from dataclasses import dataclass, field, asdict
from typing import Optional

# ─── Side Constants ────────────────────────────────────────────
SIDE_LONG = 'long'
SIDE_SHORT = 'short'
SIDES = (SIDE_LONG, SIDE_SHORT)

# ─── Level Status (forward only) ───────────────────────────────
STATUS_PENDING = 'pending'
STATUS_OPEN = 'open'
STATUS_CLOSED = 'closed'
STATUS_RANK = {STATUS_PENDING: 0, STATUS_OPEN: 1, STATUS_CLOSED: 2}

# ─── Exit Reasons ──────────────────────────────────────────────
EXIT_STOP_LOSS = 'stop_loss'
EXIT_TAKE_PROFIT = 'take_profit'
EXIT_PANIC_FLATTEN = 'panic_flatten'
EXIT_ORACLE_CUT = 'oracle_cut'
EXIT_LIQUIDATION = 'liquidation'
EXIT_END_OF_TEST = 'end_of_test'
EXIT_MANUAL = 'manual'

# ─── Actions ───────────────────────────────────────────────────
ACTION_HOLD = 'HOLD'
ACTION_OPEN = 'OPEN'
ACTION_CLOSE = 'CLOSE'
ACTION_BUILD = 'BUILD'
ACTION_REBALANCE = 'REBALANCE'
ACTION_FLATTEN_OR_CLUSTER = 'FLATTEN_OR_CLUSTER'
ACTION_TIGHTEN_RISK = 'TIGHTEN_RISK'
# Oracle-originated
ACTION_CUT_LONG = 'CUT_LONG'
ACTION_CUT_SHORT = 'CUT_SHORT'
ACTION_CLOSE_ALL = 'CLOSE_ALL'
ACTION_EMERGENCY_REBALANCE = 'EMERGENCY_REBALANCE'

ORACLE_ACTIONS = (ACTION_HOLD, ACTION_CUT_LONG, ACTION_CUT_SHORT,
                  ACTION_CLOSE_ALL, ACTION_EMERGENCY_REBALANCE)


def opposite(side: str) -> str:
    return SIDE_SHORT if side == SIDE_LONG else SIDE_LONG


def side_sign(side: str) -> int:
    return 1 if side == SIDE_LONG else -1


@dataclass
class GridLevel:
    """
    One rung of the ladder.

    `index` is the distance rank from the center (1 = adjacent level).
    `generation` counts rebuilds; a level from an older ladder is never
    re-listed once it closes.
    """
    id: int
    price: float
    side: str
    size_notional: float
    size_base: float
    index: int
    generation: int = 0
    created_at: float = 0.0
    is_real: bool = False
    status: str = STATUS_PENDING
    position_id: Optional[int] = None

    def advance(self, status: str):
        """Move status forward. Returns False when the move would regress."""
        if STATUS_RANK[status] <= STATUS_RANK[self.status]:
            return False
        self.status = status
        return True

    def distance(self, price: float) -> float:
        return abs(self.price - price)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'GridLevel':
        return cls(**d)


@dataclass
class Position:
    """A filled real level."""
    id: int
    symbol: str
    side: str
    entry_price: float
    size: float
    leverage: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    opened_at: float
    level_id: int
    entry_fee: float = 0.0
    funding: float = 0.0
    closed_at: Optional[float] = None
    realized_pnl: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    @property
    def notional(self) -> float:
        return self.entry_price * self.size

    @property
    def margin(self) -> float:
        return self.notional / self.leverage if self.leverage > 0 else self.notional

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.entry_price) * self.size * side_sign(self.side)

    def adverse_move_pct(self, price: float) -> float:
        """Price move against the position, in % of entry (negative = in profit)."""
        if self.entry_price <= 0:
            return 0.0
        return -side_sign(self.side) * (price - self.entry_price) / self.entry_price * 100.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'Position':
        return cls(**d)


@dataclass
class ClosedTrade:
    """Closed position + exit info. `realized_pnl` is gross of fees."""
    position_id: int
    symbol: str
    side: str
    entry_price: float
    exit_price: float
    size: float
    leverage: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    opened_at: float
    closed_at: float
    level_id: int
    realized_pnl: float
    fees: float
    funding: float
    exit_reason: str

    @property
    def net_pnl(self) -> float:
        return self.realized_pnl - self.fees + self.funding

    @property
    def hold_time(self) -> float:
        return self.closed_at - self.opened_at

    def to_dict(self) -> dict:
        d = asdict(self)
        d['net_pnl'] = self.net_pnl
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'ClosedTrade':
        d = {k: v for k, v in d.items() if k != 'net_pnl'}
        return cls(**d)


@dataclass
class Fill:
    """Execution result for one market order."""
    price: float
    fee: float
    slippage_cost: float = 0.0


@dataclass
class ProposedAction:
    """An action waiting for the risk gate."""
    kind: str
    symbol: str = ''
    side: Optional[str] = None
    notional: float = 0.0
    leverage: float = 1.0
    level_id: Optional[int] = None
    position_id: Optional[int] = None
    spacing_pct: Optional[float] = None
    trend_justified: bool = False
    reason: str = ''
    meta: dict = field(default_factory=dict)


def json_safe(obj):
    """Recursively replace non-finite floats with 'inf' / '-inf' / 'nan' strings."""
    if isinstance(obj, float):
        if obj != obj:
            return 'nan'
        if obj in (float('inf'), float('-inf')):
            return 'inf' if obj > 0 else '-inf'
        return obj
    if isinstance(obj, dict):
        return {k: json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    return obj


@dataclass
class BacktestResult:
    """
    equity_curve: [{'timestamp', 'equity'}], one point per processed candle
    trades: ClosedTrade list in close order
    """
    symbol: str
    equity_curve: list
    trades: list
    metrics: dict
    aborted: bool = False
    bars_processed: int = 0
    rejections: dict = field(default_factory=dict)
    event_counts: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return json_safe({
            'symbol': self.symbol,
            'equity_curve': [dict(p) for p in self.equity_curve],
            'trades': [t.to_dict() for t in self.trades],
            'metrics': self.metrics,
            'aborted': self.aborted,
            'bars_processed': self.bars_processed,
            'rejections': dict(self.rejections),
            'event_counts': dict(self.event_counts),
        })

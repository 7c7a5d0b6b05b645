"""
Error taxonomy for the grid engine.

Every failure the engine raises derives from GridError so callers can
catch the whole family at the evaluation-pass boundary.
"""

# ─── Risk rejection reason codes ───────────────────────────────
REASON_LEVERAGE_CAP = "LeverageAboveTierCap"
REASON_CAPITAL_UTILIZATION = "CapitalUtilizationExceeded"
REASON_POSITION_BIAS = "PositionBiasExceeded"
REASON_BELOW_MIN_SIZE = "BelowMinimumSize"
REASON_UNPROFITABLE_SPACING = "UnprofitableSpacing"
REASON_RISK_TIGHTENED = "RiskTightened"
REASON_SIDE_BLOCKED = "SideBlockedByPanic"


class GridError(Exception):
    """Base class for all grid engine errors."""


class ConfigError(GridError, ValueError):
    """Configuration has unknown, deprecated or out-of-range keys."""


class InsufficientData(GridError):
    """Indicator called with less history than it needs."""

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available
        super().__init__(
            f"{indicator} needs at least {required} candles, got {available}")


class InvalidTransition(GridError):
    """Ledger state machine violation (status may only move forward)."""


class NotFound(GridError):
    """Referenced level or position does not exist in the ledger."""


class IntegrityError(GridError):
    """Ledger would end up violating the real-position bounds."""


class RiskRejected(GridError):
    """Proposed action refused by the risk gate."""

    def __init__(self, reason: str, detail: str = ''):
        self.reason = reason
        self.detail = detail
        msg = f"{reason}: {detail}" if detail else reason
        super().__init__(msg)


class BelowMinimumSize(RiskRejected):
    def __init__(self, detail: str = ''):
        super().__init__(REASON_BELOW_MIN_SIZE, detail)


class UnprofitableSpacing(RiskRejected):
    def __init__(self, detail: str = ''):
        super().__init__(REASON_UNPROFITABLE_SPACING, detail)


class OracleError(GridError):
    """Decision oracle raised or returned a malformed proposal."""


class OracleTimeout(OracleError):
    """Decision oracle did not answer within the configured timeout."""


class ExternalOrderFailure(GridError):
    """Exchange rejected or failed to confirm an order."""

    def __init__(self, symbol: str, side: str, detail: str = ''):
        self.symbol = symbol
        self.side = side
        super().__init__(f"Order failed for {symbol} {side}: {detail}")

"""
Decision oracle seam.

The oracle is any external recommendation source (an LLM service, a
human, a scripted policy). The engine hands it a report and gets back
{action, confidence, reasoning}. Calls are bounded by a timeout and any
failure degrades to HOLD; the next cycle simply asks again.
"""
import concurrent.futures
import logging
from dataclasses import dataclass

from core.errors import OracleError, OracleTimeout
from engine.types import ACTION_HOLD, ORACLE_ACTIONS

logger = logging.getLogger('oracle')


@dataclass(frozen=True)
class OracleProposal:
    action: str
    confidence: float     # 0-100
    reasoning: str = ''


class DecisionOracle:
    """Base class. Subclasses implement propose(report) -> OracleProposal."""

    def propose(self, report: dict) -> OracleProposal:
        raise NotImplementedError


class StaticOracle(DecisionOracle):
    """Always returns the same proposal. Handy for dry runs and tests."""

    def __init__(self, action: str = ACTION_HOLD, confidence: float = 0.0,
                 reasoning: str = 'static'):
        self.proposal = OracleProposal(action, confidence, reasoning)

    def propose(self, report: dict) -> OracleProposal:
        return self.proposal


def build_report(symbol: str, snapshot, ledger, decision) -> dict:
    """Market + book summary handed to the oracle."""
    price = snapshot.close
    exposure = ledger.exposure()
    return {
        'symbol': symbol,
        'timestamp': snapshot.timestamp,
        'price': price,
        'signals': snapshot.to_dict(),
        'rules': decision.to_dict(),
        'grid': {
            'center_price': ledger.center_price,
            'spacing_pct': ledger.spacing_pct,
            'generation': ledger.generation,
            'real_levels': [
                {'id': lv.id, 'price': lv.price, 'side': lv.side, 'status': lv.status}
                for lv in ledger.real_levels()
            ],
        },
        'positions': [
            {'id': p.id, 'side': p.side, 'entry_price': p.entry_price, 'size': p.size,
             'unrealized_pnl': p.unrealized_pnl(price)}
            for p in ledger.open_positions()
        ],
        'exposure': exposure,
        'equity': ledger.equity(price),
        'allowed_actions': list(ORACLE_ACTIONS),
    }


class OracleClient:
    """
    Runs oracle.propose() on a single worker thread so a hung provider
    cannot stall the evaluation pass.

    At most one call is in flight. While a timed-out call is still
    running, consult() fails fast instead of queueing behind it; its
    late answer is discarded.
    """

    def __init__(self, oracle: DecisionOracle, timeout_seconds: float = 5.0):
        self.oracle = oracle
        self.timeout_seconds = timeout_seconds
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix='oracle')
        self._inflight = None

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def consult(self, report: dict) -> OracleProposal:
        """Raises OracleTimeout / OracleError; never returns a malformed proposal."""
        if self.busy:
            raise OracleTimeout("previous oracle call still running, skipped")

        future = self._pool.submit(self.oracle.propose, report)
        self._inflight = future
        try:
            proposal = future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError as e:
            raise OracleTimeout(
                f"oracle did not answer within {self.timeout_seconds}s") from e
        except Exception as e:
            raise OracleError(f"oracle failed: {e}") from e

        if not isinstance(proposal, OracleProposal):
            raise OracleError(f"oracle returned {type(proposal).__name__}, expected OracleProposal")
        if proposal.action not in ORACLE_ACTIONS:
            raise OracleError(f"oracle proposed unsupported action '{proposal.action}'")
        return proposal

    def close(self):
        self._pool.shutdown(wait=False)

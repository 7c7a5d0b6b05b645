"""
Decision Engine.

Runs the rule hierarchy over a SignalSnapshot and, when the rules settle
on HOLD, optionally asks the decision oracle for a tactical override.
The same object serves live and backtest runs.
"""
import logging
from typing import Optional

from core.errors import OracleError
from engine.oracle import OracleClient, build_report
from engine.rules import RuleEngine, Decision
from engine.types import ACTION_HOLD

logger = logging.getLogger('decision')


class DecisionEngine:

    def __init__(self, config, rule_engine: Optional[RuleEngine] = None,
                 oracle=None):
        """
        Args:
            config: StrategyConfig
            oracle: optional DecisionOracle
        """
        self.config = config
        self.rules = rule_engine or RuleEngine()
        self.oracle_client = (OracleClient(oracle, config.oracle_timeout_seconds)
                              if oracle is not None else None)
        self.oracle_failures = 0

    def decide(self, snapshot, ledger) -> Decision:
        decision = self.rules.evaluate(snapshot, self.config)
        if decision.action != ACTION_HOLD or self.oracle_client is None:
            return decision

        report = build_report(ledger.symbol, snapshot, ledger, decision)
        try:
            proposal = self.oracle_client.consult(report)
        except OracleError as e:
            self.oracle_failures += 1
            logger.warning(f"[{ledger.symbol}] Oracle unavailable, holding: {e}")
            return decision

        threshold = self.config.oracle_confidence_threshold
        if proposal.action == ACTION_HOLD or proposal.confidence < threshold:
            if proposal.action != ACTION_HOLD:
                logger.info(f"[{ledger.symbol}] Oracle {proposal.action} ignored: "
                            f"confidence {proposal.confidence:.0f} < {threshold:.0f}")
            return decision

        decision.action = proposal.action
        decision.source = 'oracle'
        decision.confidence = proposal.confidence
        decision.fired.append('oracle')
        decision.reasons.append(proposal.reasoning)
        logger.info(f"[{ledger.symbol}] Oracle → {proposal.action} "
                    f"({proposal.confidence:.0f}%): {proposal.reasoning}")
        return decision

    def close(self):
        if self.oracle_client is not None:
            self.oracle_client.close()

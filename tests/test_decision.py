"""
Tests for the rule hierarchy, the oracle seam and the Decision Engine.
"""
import sys
import os
import threading
import time
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from core.errors import OracleError, OracleTimeout, REASON_RISK_TIGHTENED, REASON_SIDE_BLOCKED
from core.signals import SignalSnapshot
from engine.decision import DecisionEngine
from engine.ledger import PositionLedger
from engine.oracle import (
    DecisionOracle, OracleProposal, OracleClient, StaticOracle, build_report,
)
from engine.rules import RuleEngine, Rule, RuleOutcome, DEFAULT_RULES
from engine.schema import StrategyConfig
from engine.types import (
    ACTION_HOLD, ACTION_FLATTEN_OR_CLUSTER, ACTION_TIGHTEN_RISK,
    ACTION_CUT_LONG, ACTION_CLOSE_ALL, SIDE_LONG, SIDE_SHORT,
)


def make_snapshot(**overrides):
    values = dict(
        timestamp=1_700_000_000_000.0, close=50000.0,
        trend_direction=SIDE_LONG, trend_strength=0.4, sar_value=49000.0,
        atr=500.0, volatility_pct=1.0, volatility_level='medium',
        volume_ratio=1.0, is_volume_anomaly=False, volume_anomaly_strength=0.0,
        velocity_pct=0.5, momentum='neutral', is_panic=False,
    )
    values.update(overrides)
    return SignalSnapshot(**values)


@pytest.fixture
def config():
    return StrategyConfig.from_params({
        'symbol': 'BTC/USDT', 'center_price': 50000.0,
        'oracle_confidence_threshold': 70.0, 'oracle_timeout_seconds': 0.2,
    })


@pytest.fixture
def ledger(config):
    return PositionLedger(config.grid)


class SlowOracle(DecisionOracle):
    def propose(self, report):
        time.sleep(2.0)
        return OracleProposal(ACTION_CLOSE_ALL, 99, 'too late')


class GatedOracle(DecisionOracle):
    """Blocks until `release` is set; counts how often it was called."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def propose(self, report):
        self.calls += 1
        self.release.wait(5.0)
        return OracleProposal(ACTION_HOLD, 10, 'late')


class BrokenOracle(DecisionOracle):
    def propose(self, report):
        raise RuntimeError("provider down")


class RecordingOracle(DecisionOracle):
    def __init__(self, proposal):
        self.proposal = proposal
        self.reports = []

    def propose(self, report):
        self.reports.append(report)
        return self.proposal


class TestRules:
    def test_quiet_market_holds_with_modifiers(self, config):
        d = RuleEngine().evaluate(make_snapshot(), config)
        assert d.action == ACTION_HOLD
        assert d.preferred_side == SIDE_LONG
        assert d.spacing_pct == pytest.approx(1.0)
        assert d.fired == ['trend_bias', 'volatility_scaling']

    def test_panic_overrides_everything(self, config):
        snap = make_snapshot(is_panic=True, velocity_pct=-7.0, is_volume_anomaly=True)
        d = RuleEngine().evaluate(snap, config)
        assert d.action == ACTION_FLATTEN_OR_CLUSTER
        assert d.cluster_side == SIDE_LONG
        assert d.preferred_side == SIDE_LONG
        # Override ends evaluation
        assert d.fired == ['velocity_panic']

    def test_panic_up_clusters_short(self, config):
        d = RuleEngine().evaluate(make_snapshot(is_panic=True, velocity_pct=8.0), config)
        assert d.cluster_side == SIDE_SHORT
        assert d.blocked_sides == {SIDE_LONG: REASON_SIDE_BLOCKED}

    def test_volume_anomaly_tightens(self, config):
        d = RuleEngine().evaluate(make_snapshot(is_volume_anomaly=True, volume_ratio=3.0), config)
        assert d.action == ACTION_TIGHTEN_RISK
        assert d.tighten_factor == config.risk.tighten_factor
        assert d.blocked_sides == {SIDE_LONG: REASON_RISK_TIGHTENED, SIDE_SHORT: REASON_RISK_TIGHTENED}

    def test_high_volatility_widens_spacing(self, config):
        d = RuleEngine().evaluate(make_snapshot(volatility_level='extreme'), config)
        assert d.spacing_pct == pytest.approx(1.5)

    def test_dynamic_sltp_distances(self):
        cfg = StrategyConfig.from_params({'use_dynamic_sltp': True, 'sl_atr_multiplier': 2.0,
                                          'tp_atr_multiplier': 1.5})
        d = RuleEngine().evaluate(make_snapshot(atr=400.0), cfg)
        assert d.sl_distance == pytest.approx(800.0)
        assert d.tp_distance == pytest.approx(600.0)

    def test_weak_trend_gives_no_bias(self):
        cfg = StrategyConfig.from_params({'min_trend_strength': 0.5})
        d = RuleEngine().evaluate(make_snapshot(trend_strength=0.1), cfg)
        assert d.preferred_side is None

    def test_custom_rule_order(self, config):
        always = Rule('always_tighten',
                      lambda s, c: RuleOutcome('always_tighten', 'test', ACTION_TIGHTEN_RISK),
                      override=True)
        engine = RuleEngine((always,) + DEFAULT_RULES)
        d = engine.evaluate(make_snapshot(is_panic=True, velocity_pct=-9), config)
        assert d.action == ACTION_TIGHTEN_RISK
        assert d.fired == ['always_tighten']


class TestOracleClient:
    def test_timeout(self):
        client = OracleClient(SlowOracle(), timeout_seconds=0.1)
        with pytest.raises(OracleTimeout):
            client.consult({})
        client.close()

    def test_hung_call_does_not_queue_more_work(self):
        oracle = GatedOracle()
        client = OracleClient(oracle, timeout_seconds=0.05)
        for _ in range(5):
            with pytest.raises(OracleTimeout):
                client.consult({})
        assert oracle.calls == 1
        assert client.busy

        oracle.release.set()
        client._inflight.result(timeout=5.0)
        assert not client.busy
        assert client.consult({}).action == ACTION_HOLD
        assert oracle.calls == 2
        client.close()

    def test_provider_error_wrapped(self):
        client = OracleClient(BrokenOracle(), timeout_seconds=1.0)
        with pytest.raises(OracleError):
            client.consult({})
        client.close()

    def test_unsupported_action(self):
        client = OracleClient(StaticOracle('BUY_EVERYTHING', 100), timeout_seconds=1.0)
        with pytest.raises(OracleError):
            client.consult({})
        client.close()

    def test_report_contents(self, config, ledger):
        d = RuleEngine().evaluate(make_snapshot(), config)
        report = build_report('BTC/USDT', make_snapshot(), ledger, d)
        assert report['price'] == 50000.0
        assert len(report['grid']['real_levels']) == 4
        assert report['positions'] == []
        assert ACTION_CLOSE_ALL in report['allowed_actions']


class TestDecisionEngine:
    def test_no_oracle_rules_only(self, config, ledger):
        engine = DecisionEngine(config)
        assert engine.decide(make_snapshot(), ledger).action == ACTION_HOLD

    def test_confident_oracle_overrides_hold(self, config, ledger):
        oracle = RecordingOracle(OracleProposal(ACTION_CUT_LONG, 85, 'breakdown'))
        engine = DecisionEngine(config, oracle=oracle)
        d = engine.decide(make_snapshot(), ledger)
        assert d.action == ACTION_CUT_LONG
        assert d.source == 'oracle'
        assert d.confidence == 85
        assert len(oracle.reports) == 1
        engine.close()

    def test_low_confidence_ignored(self, config, ledger):
        engine = DecisionEngine(config, oracle=StaticOracle(ACTION_CLOSE_ALL, 40))
        d = engine.decide(make_snapshot(), ledger)
        assert d.action == ACTION_HOLD
        assert d.source == 'rules'
        engine.close()

    def test_timeout_degrades_to_hold(self, config, ledger):
        engine = DecisionEngine(config, oracle=SlowOracle())
        d = engine.decide(make_snapshot(), ledger)
        assert d.action == ACTION_HOLD
        assert engine.oracle_failures == 1
        engine.close()

    def test_rules_override_skips_oracle(self, config, ledger):
        oracle = RecordingOracle(OracleProposal(ACTION_CLOSE_ALL, 100, ''))
        engine = DecisionEngine(config, oracle=oracle)
        d = engine.decide(make_snapshot(is_panic=True, velocity_pct=-6), ledger)
        assert d.action == ACTION_FLATTEN_OR_CLUSTER
        assert oracle.reports == []
        engine.close()


if __name__ == "__main__":
    pytest.main([__file__, '-v'])

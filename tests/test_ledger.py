"""
Tests for the Position Ledger: state machine, real/virtual selection,
rebuild carry-over, snapshot/restore and accounting identity.
"""
import sys
import os
import random
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from core.errors import InvalidTransition, NotFound, IntegrityError
from core.funding import apply_funding
from engine.ledger import PositionLedger, serialize_state
from engine.schema import GridConfig
from engine.types import (
    SIDE_LONG, SIDE_SHORT, STATUS_PENDING, STATUS_OPEN, STATUS_CLOSED,
    EXIT_TAKE_PROFIT, EXIT_STOP_LOSS,
)


@pytest.fixture
def config():
    # 10 levels: ids 0-4 short (desc price, id 4 = 50500), ids 5-9 long (id 5 = 49500)
    return GridConfig(symbol='BTC/USDT', center_price=50000, level_count=10,
                      spacing_pct=1.0, total_capital=1000, leverage=10)


@pytest.fixture
def ledger(config):
    return PositionLedger(config, created_at=0)


class TestRealSelection:
    def test_initial_real_levels_closest_each_side(self, ledger):
        real = ledger.real_levels()
        assert sorted(lv.id for lv in real) == [3, 4, 5, 6]
        assert sum(1 for lv in real if lv.side == SIDE_LONG) == 2

    def test_odd_target_goes_to_preferred_side(self, ledger):
        chosen = ledger.recompute_real_status(50000, preferred_side=SIDE_SHORT, target=3)
        assert [lv.id for lv in chosen] == [3, 4, 5]

    def test_target_clamped_to_bounds(self, ledger):
        assert len(ledger.recompute_real_status(50000, target=1)) == 2
        assert len(ledger.recompute_real_status(50000, target=9)) == 4

    def test_open_levels_stay_real(self, ledger):
        ledger.open_level(5, 49500, timestamp=1)
        # Price runs far up: the open long stays real regardless of distance
        ledger.recompute_real_status(53000)
        assert ledger.get_level(5).is_real
        assert len(ledger.real_levels()) == 4

    def test_too_many_open_levels_rejected(self, ledger):
        for lv in list(ledger.levels.values())[:5]:
            lv.status = STATUS_OPEN
        before = {lv.id: lv.is_real for lv in ledger.levels.values()}
        with pytest.raises(IntegrityError):
            ledger.recompute_real_status(50000)
        assert {lv.id: lv.is_real for lv in ledger.levels.values()} == before

    @pytest.mark.parametrize('open_ids', [[3, 4, 5], [3, 4, 5, 6]])
    def test_closing_real_levels_refills_slots(self, ledger, open_ids):
        positions = [ledger.open_level(i, ledger.get_level(i).price) for i in open_ids]
        for pos in positions:
            ledger.close_position(pos.id, 50000, EXIT_TAKE_PROFIT)
            real = ledger.real_levels()
            assert 2 <= len(real) <= 4
            assert all(lv.status != STATUS_CLOSED for lv in real)
        assert len(ledger.real_levels()) == 4
        assert not any(ledger.get_level(i).is_real for i in open_ids)

    def test_restore_repairs_real_count(self, ledger):
        state = ledger.get_state()
        for d in state['levels']:
            d['is_real'] = False
        restored = PositionLedger.from_state(state)
        assert len(restored.real_levels()) == 4
        assert restored.real_status_valid()

    def test_real_count_bounded_under_random_walk(self, config):
        """Random prices with random fills/closes: 2 ≤ real ≤ 4 after every recompute."""
        rng = random.Random(7)
        ledger = PositionLedger(config)
        price = 50000.0
        for step in range(500):
            price *= 1 + rng.uniform(-0.01, 0.01)
            ledger.recompute_real_status(price, rng.choice([SIDE_LONG, SIDE_SHORT, None]))
            real = ledger.real_levels()
            assert 2 <= len(real) <= 4
            assert all(lv.is_real for lv in ledger.levels.values()
                       if lv.status == STATUS_OPEN)

            pending = ledger.pending_real_levels()
            if pending and len(ledger.positions) < config.max_real_positions and rng.random() < 0.5:
                lv = rng.choice(pending)
                ledger.open_level(lv.id, lv.price, timestamp=step)
            if ledger.positions and rng.random() < 0.3:
                pid = rng.choice(sorted(ledger.positions))
                ledger.close_position(pid, price, EXIT_TAKE_PROFIT, timestamp=step)


class TestTransitions:
    def test_open_creates_position(self, ledger):
        pos = ledger.open_level(5, 49500, timestamp=10, stop_loss=48000, fee=0.5)
        level = ledger.get_level(5)
        assert level.status == STATUS_OPEN
        assert level.position_id == pos.id
        assert pos.side == SIDE_LONG
        assert pos.size == pytest.approx(1000 / 49500)
        assert ledger.total_fees == pytest.approx(0.5)

    def test_double_open_rejected(self, ledger):
        ledger.open_level(5, 49500)
        with pytest.raises(InvalidTransition):
            ledger.open_level(5, 49500)

    def test_virtual_level_cannot_open(self, ledger):
        assert not ledger.get_level(9).is_real
        with pytest.raises(InvalidTransition):
            ledger.open_level(9, 48000)

    def test_unknown_ids(self, ledger):
        with pytest.raises(NotFound):
            ledger.get_level(999)
        with pytest.raises(NotFound):
            ledger.close_position(999, 50000, EXIT_STOP_LOSS)
        with pytest.raises(NotFound):
            ledger.update_stops(999, stop_loss=1.0)

    def test_close_realizes_gross_pnl(self, ledger):
        pos = ledger.open_level(5, 49500, fee=0.2)
        trade = ledger.close_position(pos.id, 50000, EXIT_TAKE_PROFIT, timestamp=5, fee=0.3)
        assert trade.realized_pnl == pytest.approx(500 * 1000 / 49500)
        assert trade.fees == pytest.approx(0.5)
        assert trade.net_pnl == pytest.approx(trade.realized_pnl - 0.5)
        assert ledger.realized_pnl == pytest.approx(trade.realized_pnl)
        assert pos.id not in ledger.positions

    def test_closed_level_relisted_and_never_reopened(self, ledger):
        pos = ledger.open_level(5, 49500)
        ledger.close_position(pos.id, 49000, EXIT_STOP_LOSS)
        level = ledger.get_level(5)
        assert level.status == STATUS_CLOSED
        assert not level.is_real
        with pytest.raises(InvalidTransition):
            ledger.open_level(5, 49500)

        relisted = ledger.get_level(10)
        assert relisted.price == 49500
        assert relisted.status == STATUS_PENDING
        assert relisted.generation == 0

    def test_short_pnl_sign(self, ledger):
        pos = ledger.open_level(4, 50500)
        assert pos.side == SIDE_SHORT
        trade = ledger.close_position(pos.id, 50000, EXIT_TAKE_PROFIT)
        assert trade.realized_pnl > 0


class TestRebuild:
    def test_open_levels_carried(self, ledger):
        pos = ledger.open_level(5, 49500)
        new_levels = ledger.rebuild(52000, timestamp=100)

        assert ledger.generation == 1
        assert ledger.center_price == 52000
        assert all(lv.generation == 1 for lv in new_levels)
        assert min(lv.id for lv in new_levels) == 10
        carried = ledger.get_level(5)
        assert carried.status == STATUS_OPEN and carried.is_real
        assert pos.id in ledger.positions
        # Pending levels of the old ladder are gone
        assert all(lv.generation == 1 for lv in ledger.levels.values() if lv.id != 5)

    def test_closing_old_generation_does_not_relist(self, ledger):
        pos = ledger.open_level(5, 49500)
        ledger.rebuild(52000)
        count = len(ledger.levels)
        ledger.close_position(pos.id, 52000, EXIT_TAKE_PROFIT)
        assert len(ledger.levels) == count

    def test_rebuild_with_new_spacing(self, ledger):
        ledger.rebuild(50000, spacing_pct=2.0)
        prices = sorted(lv.price for lv in ledger.levels.values() if lv.side == SIDE_LONG)
        assert prices[-1] == 49000.0
        assert ledger.spacing_pct == 2.0


class TestSnapshot:
    def _busy_ledger(self, ledger):
        p1 = ledger.open_level(5, 49500, timestamp=1, stop_loss=48000, take_profit=50500, fee=0.1)
        ledger.open_level(4, 50500, timestamp=2, fee=0.1)
        ledger.close_position(p1.id, 50100, EXIT_TAKE_PROFIT, timestamp=3, fee=0.1)
        ledger.apply_funding(0.0001, 50100, apply_funding)
        ledger.mark(50100)
        return ledger

    def test_round_trip_byte_identical(self, ledger):
        self._busy_ledger(ledger)
        text = ledger.to_json()
        restored = PositionLedger.from_json(text)
        assert restored.to_json() == text

    def test_restored_ledger_keeps_working(self, ledger):
        self._busy_ledger(ledger)
        restored = PositionLedger.from_state(ledger.get_state())
        assert restored.equity() == pytest.approx(ledger.equity())
        assert sorted(restored.positions) == sorted(ledger.positions)
        pid = next(iter(restored.positions))
        trade = restored.close_position(pid, 50000, EXIT_TAKE_PROFIT)
        assert trade.realized_pnl > 0

    def test_serialize_state_canonical(self):
        assert serialize_state({'b': 1, 'a': [1.5]}) == '{"a":[1.5],"b":1}'

    def test_unknown_version_rejected(self, ledger):
        state = ledger.get_state()
        state['version'] = 99
        with pytest.raises(ValueError):
            PositionLedger.from_state(state)


class TestAccounting:
    def test_equity_identity(self, ledger):
        ledger.open_level(5, 49500, fee=0.25)
        p2 = ledger.open_level(4, 50500, fee=0.25)
        ledger.apply_funding(0.0003, 50000, apply_funding)
        ledger.close_position(p2.id, 50200, EXIT_TAKE_PROFIT, fee=0.25)
        price = 49800
        ledger.mark(price)
        assert ledger.check_consistency(ledger.equity(price), price)

    def test_flat_book_equity_is_capital_plus_realized_minus_fees(self, ledger):
        p1 = ledger.open_level(5, 49500, timestamp=1, fee=0.2)
        p2 = ledger.open_level(4, 50500, timestamp=1, fee=0.2)
        p3 = ledger.open_level(6, 49005, timestamp=2, fee=0.2)
        ledger.close_position(p1.id, 50000, EXIT_TAKE_PROFIT, timestamp=3, fee=0.3)
        ledger.close_position(p2.id, 50000, EXIT_TAKE_PROFIT, timestamp=3, fee=0.3)
        ledger.close_position(p3.id, 48500, EXIT_STOP_LOSS, timestamp=4, fee=0.3)
        assert not ledger.positions

        realized = sum(t.realized_pnl for t in ledger.closed_trades)
        fees = sum(t.fees for t in ledger.closed_trades)
        assert realized == pytest.approx(500 * 1000 / 49500 + 500 * 1000 / 50500
                                         - 505 * 1000 / 49005)
        assert fees == pytest.approx(1.5)
        assert ledger.equity(48000) == pytest.approx(1000 + realized - fees)

    def test_mismatch_raises(self, ledger):
        ledger.open_level(5, 49500)
        with pytest.raises(IntegrityError):
            ledger.check_consistency(ledger.equity(50000) + 1.0, 50000)

    def test_funding_direction(self, ledger):
        long_pos = ledger.open_level(5, 49500)
        short_pos = ledger.open_level(4, 50500)
        ledger.apply_funding(0.001, 50000, apply_funding)
        assert long_pos.funding < 0
        assert short_pos.funding > 0

    def test_exposure_snapshot(self, ledger):
        ledger.open_level(5, 49500)
        exp = ledger.exposure()
        assert exp['long_notional'] == pytest.approx(1000.0)
        assert exp['short_notional'] == 0.0
        assert exp['margin_used'] == pytest.approx(100.0)
        assert exp['open_count'] == 1


if __name__ == "__main__":
    pytest.main([__file__, '-v'])

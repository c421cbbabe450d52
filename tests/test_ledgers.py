"""
Tests for the range, position and treasury ledgers.
"""
import pytest

from core.exceptions import ConfigurationError, InsufficientFunds
from core.positions import PositionLedger, PositionMeta
from core.ranges import RangeConfig, RangeLedger, Thresholds
from core.treasury import TreasuryLedger, TreasuryState


def make_ranges(**kwargs):
    params = {
        "tick_spacing": 10,
        "core": RangeConfig(-100, 100),
        "buffer": RangeConfig(-400, -100),
        "thresholds": Thresholds(-50, -30),
    }
    params.update(kwargs)
    return RangeLedger(**params)


class TestRangeLedger:
    def test_valid_configuration(self):
        ranges = make_ranges()
        assert ranges.core == RangeConfig(-100, 100)
        assert ranges.buffer.contains(-400)
        assert not ranges.buffer.contains(-100)

    @pytest.mark.parametrize("core,buffer", [
        (RangeConfig(100, -100), RangeConfig(-400, -100)),  # inverted
        (RangeConfig(-100, 100), RangeConfig(-400, -95)),   # off the spacing grid
        (RangeConfig(-100, 100), RangeConfig(-400, -90)),   # overlaps core
    ])
    def test_invalid_ranges_rejected(self, core, buffer):
        with pytest.raises(ConfigurationError):
            make_ranges(core=core, buffer=buffer)

    def test_thresholds_need_a_gap(self):
        with pytest.raises(ConfigurationError):
            make_ranges(thresholds=Thresholds(-30, -30))

    def test_failed_update_keeps_previous(self):
        ranges = make_ranges()
        with pytest.raises(ConfigurationError):
            ranges.set_ranges(RangeConfig(-100, 100), RangeConfig(-50, 50))
        assert ranges.buffer == RangeConfig(-400, -100)

    def test_snapshot_restore(self):
        ranges = make_ranges()
        snap = ranges.snapshot()
        ranges.set_thresholds(Thresholds(-80, -20))
        ranges.restore(snap)
        assert ranges.thresholds == Thresholds(-50, -30)

    def test_dict_round_trip(self):
        ranges = make_ranges()
        restored = RangeLedger.from_dict(ranges.to_dict())
        assert restored.to_dict() == ranges.to_dict()

    def test_tick_bounds(self):
        with pytest.raises(ConfigurationError):
            make_ranges(tick_spacing=1, buffer=RangeConfig(-900000, -100))


class TestPositionLedger:
    def test_buffer_lifecycle(self):
        ledger = PositionLedger()
        assert not ledger.buffer_active
        ledger.set_buffer(PositionMeta("pos-2", -400, -100, 1000))
        assert ledger.buffer_active
        cleared = ledger.clear_buffer()
        assert cleared.position_id == "pos-2"
        assert ledger.buffer is None
        assert ledger.last_buffer_id == "pos-2"

    def test_inactive_buffer_cannot_be_recorded(self):
        with pytest.raises(ValueError):
            PositionLedger().set_buffer(PositionMeta("pos-2", -400, -100, 1000, active=False))

    def test_core_range_is_fixed(self):
        ledger = PositionLedger()
        ledger.set_core(PositionMeta("pos-1", -100, 100, 10))
        ledger.set_core(PositionMeta("pos-1", -100, 100, 20))
        with pytest.raises(ValueError):
            ledger.set_core(PositionMeta("pos-1", -200, 100, 20))
        with pytest.raises(ValueError):
            ledger.set_core(PositionMeta("pos-1", -100, 100, 20, active=False))

    def test_active_positions(self):
        ledger = PositionLedger()
        ledger.set_core(PositionMeta("pos-1", -100, 100, 10))
        ledger.set_buffer(PositionMeta("pos-2", -400, -100, 5))
        assert [m.position_id for m in ledger.get_active_positions()] == ["pos-1", "pos-2"]

    def test_dict_round_trip(self):
        ledger = PositionLedger()
        ledger.set_core(PositionMeta("pos-1", -100, 100, 10))
        ledger.set_buffer(PositionMeta("pos-2", -400, -100, 5))
        ledger.clear_buffer()
        restored = PositionLedger.from_dict(ledger.to_dict())
        assert restored.core == ledger.core
        assert restored.buffer is None
        assert restored.last_buffer_id == "pos-2"


class TestTreasuryLedger:
    def test_credit_and_debit(self):
        treasury = TreasuryLedger()
        treasury.credit(100, 50)
        state = treasury.debit(40, 50)
        assert (state.balance0, state.balance1) == (60, 0)

    def test_debit_is_all_or_nothing(self):
        treasury = TreasuryLedger(TreasuryState(balance0=100, balance1=10))
        with pytest.raises(InsufficientFunds) as exc:
            treasury.debit(50, 11)
        assert exc.value.available == (100, 10)
        assert treasury.state == TreasuryState(balance0=100, balance1=10)

    def test_negative_amounts_rejected(self):
        with pytest.raises(ValueError):
            TreasuryLedger().credit(-1, 0)

    def test_fee_counters_only_grow(self):
        treasury = TreasuryLedger()
        treasury.credit(7, 3)
        treasury.record_fees_collected(7, 3)
        treasury.debit(7, 3)
        assert treasury.state.total_fees_collected0 == 7
        assert treasury.state.total_fees_collected1 == 3
        assert treasury.balance0 == 0

    def test_can_cover(self):
        treasury = TreasuryLedger(TreasuryState(balance0=10, balance1=10))
        assert treasury.can_cover(10, 0)
        assert not treasury.can_cover(11, 0)

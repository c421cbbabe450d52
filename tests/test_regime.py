"""
Tests for regime detection and hysteresis.
"""
import pytest

from core.ranges import Thresholds
from core.regime import (
    TRANSITIONS,
    Regime,
    RegimeDetector,
    determine_regime,
    find_transition,
    transition_between,
)

THRESHOLDS = Thresholds(escalate=-50, deescalate=-30)


class TestDetermineRegime:
    """Pure regime decision"""

    @pytest.mark.parametrize("tick", [-50, -51, -400])
    def test_normal_escalates_at_or_below_threshold(self, tick):
        assert determine_regime(tick, Regime.NORMAL, THRESHOLDS) == Regime.DEFEND

    @pytest.mark.parametrize("tick", [-49, -40, -30, 0, 200])
    def test_normal_stays_above_threshold(self, tick):
        assert determine_regime(tick, Regime.NORMAL, THRESHOLDS) == Regime.NORMAL

    @pytest.mark.parametrize("tick", [-30, -29, 0, 500])
    def test_defend_deescalates_at_or_above_threshold(self, tick):
        assert determine_regime(tick, Regime.DEFEND, THRESHOLDS) == Regime.NORMAL

    @pytest.mark.parametrize("tick", [-31, -40, -50, -400])
    def test_defend_stays_below_deescalate(self, tick):
        assert determine_regime(tick, Regime.DEFEND, THRESHOLDS) == Regime.DEFEND

    def test_band_never_changes_regime(self):
        """Every tick strictly inside (escalate, deescalate) keeps whatever is active"""
        for tick in range(-49, -30):
            assert determine_regime(tick, Regime.NORMAL, THRESHOLDS) == Regime.NORMAL
            assert determine_regime(tick, Regime.DEFEND, THRESHOLDS) == Regime.DEFEND

    def test_no_flapping_on_oscillation(self):
        """A sequence oscillating inside the band after escalation stays in DEFEND"""
        regime = Regime.NORMAL
        history = []
        for tick in [0, -60, -45, -35, -45, -31, -40]:
            regime = determine_regime(tick, regime, THRESHOLDS)
            history.append(regime)
        assert history == [Regime.NORMAL] + [Regime.DEFEND] * 6

    def test_scenario_sequence(self):
        regime = Regime.NORMAL
        observed = []
        for tick in [0, -60, -40, -20]:
            regime = determine_regime(tick, regime, THRESHOLDS)
            observed.append(regime)
        assert observed == [Regime.NORMAL, Regime.DEFEND, Regime.DEFEND, Regime.NORMAL]


class TestTransitionTable:
    def test_actions(self):
        assert find_transition(-60, Regime.NORMAL, THRESHOLDS).action == "deploy_buffer"
        assert find_transition(-20, Regime.DEFEND, THRESHOLDS).action == "remove_buffer"
        assert find_transition(-40, Regime.DEFEND, THRESHOLDS) is None

    def test_every_regime_has_rows(self):
        assert set(TRANSITIONS) == set(Regime)

    def test_transition_between(self):
        row = transition_between(Regime.NORMAL, Regime.DEFEND)
        assert row.action == "deploy_buffer"
        with pytest.raises(KeyError):
            transition_between(Regime.NORMAL, Regime.NORMAL)


class TestRegimeParsing:
    @pytest.mark.parametrize("value,expected", [
        ("normal", Regime.NORMAL),
        ("DEFEND", Regime.DEFEND),
        (1, Regime.DEFEND),
        (Regime.NORMAL, Regime.NORMAL),
    ])
    def test_from_value(self, value, expected):
        assert Regime.from_value(value) == expected

    def test_unknown_regime(self):
        with pytest.raises(ValueError):
            Regime.from_value("panic")

    def test_str_is_lowercase_name(self):
        assert str(Regime.DEFEND) == "defend"


class TestRegimeDetector:
    def test_explains_band(self):
        signal = RegimeDetector().detect(-40, Regime.NORMAL, THRESHOLDS)
        assert not signal.changed
        assert "hysteresis band" in signal.reason

    def test_explains_escalation(self):
        signal = RegimeDetector().detect(-60, Regime.NORMAL, THRESHOLDS)
        assert signal.changed
        assert signal.target == Regime.DEFEND
        assert "deploy_buffer" in signal.reason

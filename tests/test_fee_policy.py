"""
Tests for the directional fee policy.

Fee units are hundredths of a percent: 30 = 0.30%.
"""
import pytest

from core.exceptions import ConfigurationError
from core.fee_policy import FeeCurve, FeeHook, FeePolicy, is_toward_peg
from core.regime import Regime


@pytest.fixture
def policy():
    return FeePolicy()


class TestPreviewFee:
    def test_dead_zone_returns_base(self, policy):
        for tick in (-5, -3, 0, 3, 5):
            assert policy.preview_fee(tick, toward_peg=True) == 30
            assert policy.preview_fee(tick, toward_peg=False) == 30

    def test_away_surcharge(self, policy):
        # excess 55 ticks * 5.0 = 275
        assert policy.preview_fee(-60, toward_peg=False) == 305

    def test_toward_discount_truncates(self, policy):
        # excess 15 * 0.625 = 9.375 -> 9
        assert policy.preview_fee(-20, toward_peg=True) == 21

    def test_toward_clamped_at_min(self, policy):
        assert policy.preview_fee(-60, toward_peg=True) == 5

    def test_away_clamped_at_max(self, policy):
        assert policy.preview_fee(-300, toward_peg=False) == 1000
        assert policy.preview_fee(5000, toward_peg=False) == 1000

    def test_far_above_peg_saturates_both_sides(self, policy):
        # excess 195: away 30 + 975 = 1005, toward 30 - 121 = -91
        away = policy.quote(200, zero_for_one=False)
        toward = policy.quote(200, zero_for_one=True)
        assert not away.toward_peg and toward.toward_peg
        assert (away.raw_fee, away.fee) == (1005, 1000)
        assert (toward.raw_fee, toward.fee) == (-91, 5)
        assert away.fee > toward.fee

    def test_symmetric_in_deviation(self, policy):
        assert policy.preview_fee(40, toward_peg=False) == policy.preview_fee(-40, toward_peg=False)

    def test_monotonic_in_deviation(self, policy):
        away = [policy.preview_fee(-d, toward_peg=False) for d in range(0, 300)]
        toward = [policy.preview_fee(-d, toward_peg=True) for d in range(0, 300)]
        assert away == sorted(away)
        assert toward == sorted(toward, reverse=True)

    def test_away_never_below_toward(self, policy):
        for tick in range(-500, 501, 7):
            assert policy.preview_fee(tick, False) >= policy.preview_fee(tick, True)

    def test_always_within_bounds(self, policy):
        for tick in range(-2000, 2001, 37):
            for toward in (True, False):
                assert 5 <= policy.preview_fee(tick, toward) <= 1000

    def test_quote_keeps_raw_fee(self, policy):
        quote = policy.quote_direction(-60, toward_peg=True)
        assert quote.raw_fee == -4
        assert quote.fee == 5
        assert quote.fee_pips == 500
        assert quote.fee_pct == pytest.approx(0.05)


class TestDirection:
    def test_below_peg_buying_token0_is_toward(self):
        assert is_toward_peg(-60, zero_for_one=False)
        assert not is_toward_peg(-60, zero_for_one=True)

    def test_above_peg_selling_token0_is_toward(self):
        assert is_toward_peg(60, zero_for_one=True)
        assert not is_toward_peg(60, zero_for_one=False)

    def test_at_peg_everything_is_away(self):
        assert not is_toward_peg(0, zero_for_one=True)
        assert not is_toward_peg(0, zero_for_one=False)

    def test_custom_peg_tick(self):
        assert is_toward_peg(-10, zero_for_one=True, peg_tick=-20)


class TestCurves:
    def test_invalid_curve_rejected(self):
        with pytest.raises(ConfigurationError):
            FeeCurve(base_fee=2000, min_fee=5, max_fee=1000).validate()
        with pytest.raises(ConfigurationError):
            FeeCurve(toward_slope_milli=6000, away_slope_milli=5000).validate()
        with pytest.raises(ConfigurationError):
            FeePolicy({Regime.NORMAL: FeeCurve(min_fee=50, base_fee=30)})

    def test_regime_curve_used_and_normal_fallback(self):
        policy = FeePolicy({Regime.DEFEND: FeeCurve(away_slope_milli=8000, toward_slope_milli=1000)})
        assert policy.preview_fee(-60, False, Regime.DEFEND) == 30 + 55 * 8
        assert policy.preview_fee(-60, False, Regime.NORMAL) == 305

    def test_set_curve_validates(self):
        policy = FeePolicy()
        with pytest.raises(ConfigurationError):
            policy.set_curve(Regime.DEFEND, FeeCurve(min_fee=100, base_fee=30))
        assert policy.curve_for(Regime.DEFEND) == FeeCurve()

    def test_round_trip_dict(self):
        curve = FeeCurve(base_fee=40, away_slope_milli=7000)
        assert FeeCurve.from_dict(curve.to_dict()) == curve


class TestFeeHook:
    def test_reads_live_tick_and_regime(self):
        state = {"tick": -60, "regime": Regime.NORMAL}
        hook = FeeHook(FeePolicy(), lambda: state["tick"], lambda: state["regime"])
        assert hook.before_swap(zero_for_one=True).fee == 305
        state["tick"] = 0
        assert hook.before_swap(zero_for_one=True).fee == 30

"""
Tests for tick math and liquidity/amount conversions.
"""
import pytest

from core.liquidity_math import (
    MAX_TICK,
    MIN_TICK,
    Q96,
    get_amounts_for_liquidity,
    get_liquidity_for_amounts,
    get_sqrt_ratio_at_tick,
    required_assets,
    tick_to_price,
)

CORE = (get_sqrt_ratio_at_tick(-100), get_sqrt_ratio_at_tick(100))
BUFFER = (get_sqrt_ratio_at_tick(-400), get_sqrt_ratio_at_tick(-100))


class TestSqrtRatio:
    def test_known_values(self):
        assert get_sqrt_ratio_at_tick(0) == Q96
        assert get_sqrt_ratio_at_tick(MIN_TICK) == 4295128739
        assert get_sqrt_ratio_at_tick(MAX_TICK) == 1461446703485210103287273052203988822378723970342

    def test_monotonic(self):
        ticks = [-1000, -100, -1, 0, 1, 100, 1000]
        ratios = [get_sqrt_ratio_at_tick(t) for t in ticks]
        assert ratios == sorted(ratios)

    def test_matches_float_price(self):
        ratio = get_sqrt_ratio_at_tick(-60)
        assert (ratio / Q96) ** 2 == pytest.approx(tick_to_price(-60), rel=1e-9)

    def test_out_of_bounds(self):
        with pytest.raises(ValueError):
            get_sqrt_ratio_at_tick(MAX_TICK + 1)


class TestRequiredAssets:
    def test_price_above_range_needs_token1(self):
        assert required_assets(get_sqrt_ratio_at_tick(-60), *BUFFER) == (False, True)

    def test_price_below_range_needs_token0(self):
        assert required_assets(get_sqrt_ratio_at_tick(-500), *BUFFER) == (True, False)

    def test_price_inside_range_needs_both(self):
        assert required_assets(get_sqrt_ratio_at_tick(-200), *BUFFER) == (True, True)

    def test_lower_edge_counts_as_below(self):
        assert required_assets(BUFFER[0], *BUFFER) == (True, False)


class TestLiquidityForAmounts:
    def test_cost_never_exceeds_budget(self):
        for tick in (-500, -400, -250, -100, -60, 0):
            sqrt_price = get_sqrt_ratio_at_tick(tick)
            budget0, budget1 = 123_456_789, 987_654_321
            liquidity = get_liquidity_for_amounts(sqrt_price, *BUFFER, budget0, budget1)
            cost0, cost1 = get_amounts_for_liquidity(sqrt_price, *BUFFER, liquidity, round_up=True)
            assert cost0 <= budget0
            assert cost1 <= budget1

    def test_single_sided_budget(self):
        sqrt_price = get_sqrt_ratio_at_tick(-60)
        liquidity = get_liquidity_for_amounts(sqrt_price, *BUFFER, 0, 1_000_000)
        assert liquidity > 0
        amount0, amount1 = get_amounts_for_liquidity(sqrt_price, *BUFFER, liquidity, round_up=True)
        assert amount0 == 0
        assert 999_000 < amount1 <= 1_000_000

    def test_scarce_side_binds_inside_range(self):
        sqrt_price = get_sqrt_ratio_at_tick(0)
        balanced = get_liquidity_for_amounts(sqrt_price, *CORE, 1_000_000, 1_000_000)
        starved = get_liquidity_for_amounts(sqrt_price, *CORE, 1_000_000, 10)
        assert 0 < starved < balanced

    def test_empty_budget_gives_zero(self):
        assert get_liquidity_for_amounts(get_sqrt_ratio_at_tick(-60), *BUFFER, 0, 0) == 0

    def test_withdraw_rounds_down(self):
        sqrt_price = get_sqrt_ratio_at_tick(-60)
        liquidity = get_liquidity_for_amounts(sqrt_price, *BUFFER, 0, 1_000_000)
        paid = get_amounts_for_liquidity(sqrt_price, *BUFFER, liquidity, round_up=True)
        received = get_amounts_for_liquidity(sqrt_price, *BUFFER, liquidity, round_up=False)
        assert received[1] <= paid[1]
        assert paid[1] - received[1] <= 1
